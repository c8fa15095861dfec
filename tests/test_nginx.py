"""
Tests for nginx configuration.

Tests cover:
- Listen directive parsing
- Adding local listens to a FastPanel server block
- Laravel server block generation
- nginx bind, config and status commands
"""
import pytest

import deploy_laravel
from deploy_laravel import (
    add_local_listens,
    find_listen_directives,
    find_listen_ips,
    generate_laravel_server_block,
    nginx_bind,
    nginx_config,
    nginx_status,
    save_site,
    site_defaults,
)

from tests.conftest import FASTPANEL_CONF

BACKUP_DIR = "/root/nginx_backup_20250101_000000"


class TestListenParsing:
    """Tests for find_listen_directives and find_listen_ips."""

    def test_directives(self):
        """Should list every listen argument in order."""
        assert find_listen_directives(FASTPANEL_CONF) == ["203.0.113.10:80", "203.0.113.10:443 ssl http2"]

    def test_ips(self):
        """Should list distinct explicit IPs."""
        assert find_listen_ips(FASTPANEL_CONF) == ["203.0.113.10"]

    def test_wildcards_have_no_ip(self):
        """Should skip listens without an address."""
        assert find_listen_ips("listen 80;\nlisten [::]:80;\n") == []


class TestAddLocalListens:
    """Tests for add_local_listens."""

    def test_adds_after_external_listen(self):
        """Should add 127.0.0.1:80 and 80 right after the external listen."""
        patched, changed = add_local_listens(FASTPANEL_CONF, "203.0.113.10")
        assert changed is True
        assert (
            "    listen 203.0.113.10:80;\n"
            "    listen 127.0.0.1:80;\n"
            "    listen 80;\n"
            "    server_name besthammer.club"
        ) in patched

    def test_leaves_https_block(self):
        """Should not touch the 443 server."""
        patched, _ = add_local_listens(FASTPANEL_CONF, "203.0.113.10")
        assert patched.count("listen 127.0.0.1") == 1
        assert "listen 203.0.113.10:443 ssl http2;" in patched

    def test_second_run_changes_nothing(self):
        """Should be idempotent."""
        once, _ = add_local_listens(FASTPANEL_CONF, "203.0.113.10")
        twice, changed = add_local_listens(once, "203.0.113.10")
        assert changed is False
        assert twice == once

    def test_without_universal(self):
        """Should add only the loopback listen."""
        patched, _ = add_local_listens(FASTPANEL_CONF, "203.0.113.10", universal=False)
        assert "listen 127.0.0.1:80;" in patched
        assert "listen 80;" not in patched

    def test_existing_wildcard(self):
        """Should not add a second wildcard listen."""
        conf = "server {\n    listen 203.0.113.10:80;\n}\nserver {\n    listen 80 default_server;\n}\n"
        patched, _ = add_local_listens(conf, "203.0.113.10")
        assert "listen 127.0.0.1:80;" in patched
        assert patched.count("listen 80") == 1

    def test_other_ip_untouched(self):
        """Should change nothing when the IP does not match."""
        patched, changed = add_local_listens(FASTPANEL_CONF, "198.51.100.1")
        assert changed is False
        assert patched == FASTPANEL_CONF

    def test_keeps_tab_indentation(self):
        """Should copy the indentation of the matched line."""
        conf = "server {\n\tlisten 203.0.113.10:80;\n}"
        patched, _ = add_local_listens(conf, "203.0.113.10")
        assert "\tlisten 127.0.0.1:80;" in patched
        assert not patched.endswith("\n")


class TestServerBlock:
    """Tests for generate_laravel_server_block."""

    SOCKET = "unix:/run/php/php8.2-fpm.sock"

    def test_http_block(self):
        """Should serve <root>/public through PHP-FPM."""
        block = generate_laravel_server_block("example.com www.example.com", "/srv/app", self.SOCKET)
        assert block.count("server {") == 1
        assert block.count("{") == block.count("}")
        assert "listen 80;" in block
        assert "listen [::]:80;" in block
        assert "server_name example.com www.example.com;" in block
        assert "root /srv/app/public;" in block
        assert "try_files $uri $uri/ /index.php?$query_string;" in block
        assert r"location ~ \.php$ {" in block
        assert f"fastcgi_pass {self.SOCKET};" in block
        assert r"location ~ /\.(?!well-known).* {" in block
        assert "return 301" not in block

    def test_https_blocks(self):
        """Should redirect port 80 and serve the app on 443."""
        block = generate_laravel_server_block(
            "example.com", "/srv/app", "127.0.0.1:9000", ssl_domain="example.com"
        )
        assert block.count("server {") == 2
        assert block.count("{") == block.count("}")
        redirect, app = block.split("\n\nserver {", 1)
        assert "location /.well-known/acme-challenge/ {" in redirect
        assert "return 301 https://$host$request_uri;" in redirect
        assert "fastcgi_pass" not in redirect
        assert "listen 443 ssl http2;" in app
        assert "ssl_certificate /etc/letsencrypt/live/example.com/fullchain.pem;" in app
        assert "ssl_certificate_key /etc/letsencrypt/live/example.com/privkey.pem;" in app
        assert "fastcgi_pass 127.0.0.1:9000;" in app


class TestNginxBind:
    """Tests for the nginx bind command."""

    @pytest.fixture
    def conf(self, site):
        return site["nginx_conf"]

    def test_patches_config(self, host, site_file, conf, log_dir):
        """Should back up, patch, test and reload."""
        host.on(f"cat {conf}", FASTPANEL_CONF)
        host.on("curl -s -o /dev/null", "200")
        nginx_bind("hammer")
        assert "listen 127.0.0.1:80;" in host.written(conf)
        assert host.index(f"mkdir -p {BACKUP_DIR}") < host.index(f"base64 -d > {conf}")
        assert host.index(f"base64 -d > {conf}") < host.index("nginx -t")
        assert host.index("nginx -t") < host.index("systemctl reload nginx")
        assert host.ran("curl -s -o /dev/null -m 10 -w '%{http_code}' http://127.0.0.1/")
        log_text = (log_dir / "nginx_binding_fix_20250101_000000.log").read_text()
        assert "[STEP] Step 1: Current bindings" in log_text

    def test_removes_obsolete_binding_confs(self, host, site_file, conf):
        """Should delete binding configs left by earlier fixes."""
        host.on(f"cat {conf}", FASTPANEL_CONF)
        host.on("test -f /etc/nginx/conf.d/universal-binding.conf", exited=1)
        nginx_bind("hammer")
        assert host.ran("rm -f /etc/nginx/conf.d/local-binding.conf")
        assert not host.ran("rm -f /etc/nginx/conf.d/universal-binding.conf")

    def test_restores_on_failed_test(self, host, site_file, conf):
        """Should restore the backup and stop when nginx -t fails."""
        host.on(f"cat {conf}", FASTPANEL_CONF)
        host.on("nginx -t", exited=1, stderr="nginx: [emerg] duplicate listen")
        with pytest.raises(SystemExit):
            nginx_bind("hammer")
        assert host.ran(f"cp -a {BACKUP_DIR}{conf} {conf}")
        assert not host.ran("systemctl reload nginx")

    def test_already_bound(self, host, site_file, conf):
        """Should not rewrite a config that already listens locally."""
        patched, _ = add_local_listens(FASTPANEL_CONF, "203.0.113.10")
        host.on(f"cat {conf}", patched)
        nginx_bind("hammer")
        assert host.written(conf) is None
        assert host.ran("systemctl reload nginx")

    def test_explicit_ip(self, host, site_file, conf):
        """Should patch the listen for the IP given on the command line."""
        host.on(f"cat {conf}", FASTPANEL_CONF.replace("203.0.113.10", "198.51.100.7"))
        nginx_bind("hammer", external_ip="198.51.100.7")
        assert "listen 198.51.100.7:80;\n    listen 127.0.0.1:80;" in host.written(conf)

    def test_missing_config(self, host, site_file, conf):
        """Should stop when the site config does not exist."""
        host.on(f"cat {conf}", exited=1)
        with pytest.raises(SystemExit):
            nginx_bind("hammer")

    def test_requires_root(self, host, site_file):
        """Should refuse to run without root."""
        host.on("id -u", "1000")
        with pytest.raises(SystemExit):
            nginx_bind("hammer")


class TestNginxConfig:
    """Tests for the nginx config command."""

    @pytest.fixture
    def plain_site(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        data = site_defaults("example.com", "plain")
        data["host"] = "198.51.100.7"
        save_site("shop", data)
        return "shop"

    def test_fastpanel_not_touched(self, host, site_file):
        """Should leave FastPanel vhosts alone without --force."""
        nginx_config("hammer")
        assert not host.ran("sites-available")

    def test_writes_plain_vhost(self, host, plain_site):
        """Should write, enable, test and reload the vhost."""
        host.on("ls /var/run/php", "/run/php/php8.2-fpm.sock")
        nginx_config(plain_site)
        block = host.written("/etc/nginx/sites-available/example.com")
        assert "server_name example.com www.example.com;" in block
        assert "root /var/www/html/public;" in block
        assert "fastcgi_pass unix:/run/php/php8.2-fpm.sock;" in block
        assert host.ran("ln -sf /etc/nginx/sites-available/example.com /etc/nginx/sites-enabled/example.com")
        assert host.index("nginx -t") < host.index("systemctl reload nginx")

    def test_https_needs_certificate(self, host, plain_site):
        """Should stop before writing when the certificate is missing."""
        host.on("test -f /etc/letsencrypt/live/example.com/fullchain.pem", exited=1)
        with pytest.raises(SystemExit):
            nginx_config(plain_site, https=True)
        assert host.written("/etc/nginx/sites-available/example.com") is None

    def test_failed_config_test(self, host, plain_site):
        """Should stop without reloading when nginx -t fails."""
        host.on("nginx -t", exited=1, stderr="bad")
        with pytest.raises(SystemExit):
            nginx_config(plain_site)
        assert not host.ran("systemctl reload nginx")


class TestNginxStatus:
    """Tests for the nginx status command."""

    def test_reports_listens(self, host, site_file, site, capsys):
        """Should show the site listen directives."""
        host.on(f"cat {site['nginx_conf']}", FASTPANEL_CONF)
        host.on("systemctl is-active nginx", "active")
        nginx_status("hammer")
        out = capsys.readouterr().out
        assert "listen 203.0.113.10:80" in out
        assert "nginx service: active" in out

    def test_reload_falls_back_to_restart(self, host, site):
        """Should restart nginx when reload fails."""
        host.on("systemctl reload nginx", exited=1)
        assert deploy_laravel.reload_nginx(site) is True
        assert host.ran("systemctl restart nginx")
