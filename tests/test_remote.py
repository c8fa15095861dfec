"""
Tests for remote execution helpers.

Tests cover:
- run_on over SSH, locally and on timeout
- ssh/ssh_script/ssh_write_file command building
- rsync command building and tar fallback
- Host detection (panel, web user, PHP, external IP)
- Prompts and secrets
- HTTP and MySQL helpers
"""
import base64
import shlex
from unittest.mock import MagicMock, patch

import pytest
from invoke import Result
from invoke.exceptions import CommandTimedOut

import deploy_laravel
from deploy_laravel import (
    SOURCE_EXCLUDE,
    as_web_user,
    cert_path,
    confirm,
    detect_external_ip,
    detect_panel,
    detect_php_version,
    detect_web_user,
    mysql_root,
    mysql_root_password,
    port_bindings,
    remote_http_probe,
    remote_http_status,
    require_root,
    rsync,
    run_on,
    ssh,
    ssh_read_file,
    ssh_script,
    ssh_write_file,
    wait_for_http,
)

from tests.conftest import FASTPANEL_CONF


class TestRunOn:
    """Tests for run_on."""

    def test_local_when_no_host(self):
        """Should run locally with output hidden and no stdin."""
        with patch("deploy_laravel.local_run") as local_run:
            local_run.return_value = Result(stdout="ok", exited=0)
            result = run_on({"host": None}, "uptime", timeout=5)
        local_run.assert_called_once_with("uptime", hide=True, warn=True, timeout=5, in_stream=False)
        assert result.stdout == "ok"

    def test_remote_over_ssh(self):
        """Should open a fabric connection as the site ssh user."""
        with patch("deploy_laravel.Connection") as connection:
            remote = connection.return_value.__enter__.return_value
            remote.run.return_value = Result(stdout="up", exited=0)
            result = run_on({"host": "203.0.113.10", "ssh_user": "deploy"}, "uptime")
        connection.assert_called_once_with(
            "203.0.113.10", user="deploy", connect_kwargs={"look_for_keys": True}
        )
        remote.run.assert_called_once_with("uptime", hide=True, warn=True, timeout=None, in_stream=False)
        assert result.stdout == "up"

    def test_defaults_to_root(self):
        """Should connect as root when the descriptor has no ssh user."""
        with patch("deploy_laravel.Connection") as connection:
            run_on({"host": "203.0.113.10"}, "true")
        assert connection.call_args.kwargs["user"] == "root"

    def test_timeout_returns_failed_result(self):
        """Should turn a timeout into a failed result with exit 124."""
        partial = Result(stdout="partial", stderr="", exited=-1)
        with patch("deploy_laravel.local_run", side_effect=CommandTimedOut(partial, timeout=5)):
            result = run_on({}, "composer install", timeout=5)
        assert result.exited == 124
        assert result.failed
        assert result.stdout == "partial"


class TestShellHelpers:
    """Tests for ssh, ssh_script and ssh_write_file."""

    def test_ssh_returns_stdout(self, host, site):
        """Should return stdout on success."""
        host.on("hostname", "web1\n")
        assert ssh(site, "hostname") == "web1\n"

    def test_ssh_exits_on_failure(self, host, site):
        """Should exit when the command fails."""
        host.on("false", exited=1, stderr="boom")
        with pytest.raises(SystemExit):
            ssh(site, "false")

    def test_script_escapes_single_quotes(self, host, site):
        """Should wrap the script in bash -c with quotes escaped."""
        ssh_script(site, "echo 'hi'")
        assert host.commands[-1] == "bash -c 'echo '\\''hi'\\'''"

    def test_script_unchecked(self, host, site):
        """Should return output of a failing script when check is off."""
        host.on("bash -c", "partial", exited=2)
        assert ssh_script(site, "exit 2", check=False) == "partial"

    def test_write_file_with_mode(self, host, site):
        """Should write through base64 under a restrictive umask."""
        ssh_write_file(site, "/root/creds.txt", "secret='x'\n", mode="600")
        cmd = host.commands[-1]
        assert cmd.startswith("umask 077 && echo '")
        assert cmd.endswith("&& chmod 600 /root/creds.txt")
        assert "secret" not in cmd
        assert host.written("/root/creds.txt") == "secret='x'\n"

    def test_write_file_failure(self, host, site):
        """Should exit when the write fails."""
        host.on("base64 -d > /etc/ro.conf", exited=1, stderr="Read-only file system")
        with pytest.raises(SystemExit):
            ssh_write_file(site, "/etc/ro.conf", "x")

    def test_write_file_failure_safe(self, host, site):
        """Should report and return False in safe mode."""
        host.on("base64 -d > /etc/ro.conf", exited=1, stderr="Read-only file system")
        assert ssh_write_file(site, "/etc/ro.conf", "x", safe=True) is False

    def test_read_missing_file(self, host, site):
        """Should return None when the file cannot be read."""
        host.on("cat /nope", exited=1)
        assert ssh_read_file(site, "/nope") is None

    def test_as_web_user(self, site):
        """Should run as the web user from the web root."""
        cmd = as_web_user(site, "php artisan about")
        inner = "cd /var/www/besthammer_c_usr/data/www/besthammer.club && php artisan about"
        assert cmd == f"sudo -u besthammer_c_usr -H bash -lc {shlex.quote(inner)}"

    def test_require_root(self, host, site):
        """Should exit when not running as root."""
        host.on("id -u", "1000")
        with pytest.raises(SystemExit):
            require_root(site)


class TestRsync:
    """Tests for rsync."""

    def test_remote_command(self, host, site):
        """Should push over ssh with excludes into the target dir."""
        with patch("deploy_laravel.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stderr="")
            rsync("/src", site, "/stage", exclude=SOURCE_EXCLUDE)
        cmd = run.call_args.args[0]
        assert cmd[:5] == ["rsync", "-az", "--delete", "--partial", "-e"]
        assert cmd[-2:] == ["/src/", "root@203.0.113.10:/stage/"]
        assert "--exclude" in cmd
        assert "/.git" in cmd
        assert host.ran("mkdir -p /stage")

    def test_excludes_anchored_at_source_root(self, host, site):
        """Should exclude vendor only at the top so published vendor views ship."""
        with patch("deploy_laravel.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stderr="")
            rsync("/src", site, "/stage", exclude=SOURCE_EXCLUDE)
        cmd = run.call_args.args[0]
        excludes = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "--exclude"]
        assert "/vendor" in excludes
        assert "/node_modules" in excludes
        assert all(ex.startswith("/") for ex in excludes)

    def test_local_command(self, host, site):
        """Should copy without ssh when the site has no host."""
        site["host"] = None
        with patch("deploy_laravel.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stderr="")
            rsync("/src", site, "/stage")
        cmd = run.call_args.args[0]
        assert "-e" not in cmd
        assert cmd[-2:] == ["/src/", "/stage/"]

    def test_falls_back_to_tar(self, host, site):
        """Should retry with tar when rsync chokes on large files."""
        with patch("deploy_laravel.subprocess.run") as run, \
                patch("deploy_laravel._rsync_tar_fallback") as fallback:
            run.return_value = MagicMock(returncode=12, stderr="rsync: write failed: Result too large (34)")
            rsync("/src", site, "/stage", exclude=["vendor"])
        fallback.assert_called_once_with("/src", site, "/stage", ["vendor"])

    def test_tar_excludes_anchored(self, host, site):
        """Should keep nested vendor directories in the tar archive."""
        site["host"] = None
        with patch("deploy_laravel.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0, stderr="")
            deploy_laravel._rsync_tar_fallback("/src", site, "/stage", ["/vendor", "/storage/logs"])
        cmd = run.call_args_list[0].args[0]
        assert cmd[0] == "tar"
        assert "./vendor" in cmd
        assert "./storage/logs" in cmd
        assert "vendor" not in cmd
        assert host.ran("tar -xzf")

    def test_other_failure_exits(self, host, site):
        """Should exit on other rsync errors."""
        with patch("deploy_laravel.subprocess.run") as run:
            run.return_value = MagicMock(returncode=23, stderr="permission denied")
            with pytest.raises(SystemExit):
                rsync("/src", site, "/stage")


class TestDetection:
    """Tests for host detection helpers."""

    def test_fastpanel_detected(self, host, site):
        """Should detect FastPanel from its markers."""
        assert detect_panel(site) == "fastpanel"
        assert host.ran("test -e /usr/local/fastpanel2")

    def test_plain_host(self, host, site):
        """Should fall back to plain when no marker exists."""
        host.on("test -e /usr/local/fastpanel", exited=1)
        assert detect_panel(site) == "plain"

    def test_web_user_from_domain(self, host, site):
        """Should pick the FastPanel owner when it exists."""
        assert detect_web_user(site, "besthammer.club") == "besthammer_c_usr"

    def test_web_user_fallback(self, host, site):
        """Should fall back to www-data when no candidate exists."""
        host.on("id -u besthammer_c_usr", exited=1)
        host.on("id -u besthammer_club", exited=1)
        assert detect_web_user(site, "besthammer.club") == "www-data"

    def test_web_user_explicit(self, host, site):
        """Should trust an explicit user without probing."""
        assert detect_web_user(site, "besthammer.club", "owner") == "owner"
        assert host.commands == []

    def test_php_version_highest_fpm(self, host, site):
        """Should pick the highest installed FPM version."""
        host.on("ls -d /etc/php", "/etc/php/7.4/fpm\n/etc/php/8.10/fpm\n/etc/php/8.2/fpm\n")
        assert detect_php_version(site) == "8.10"

    def test_php_version_from_cli(self, host, site):
        """Should ask the CLI when no FPM directory exists."""
        host.on("PHP_MAJOR_VERSION", "8.1")
        assert detect_php_version(site) == "8.1"

    def test_php_version_unknown(self, host, site):
        """Should return None without PHP."""
        assert detect_php_version(site) is None

    def test_external_ip_from_config(self, host, site):
        """Should read the IP the site config listens on."""
        host.on(f"cat {site['nginx_conf']}", FASTPANEL_CONF)
        site["host"] = "server.example.com"
        assert detect_external_ip(site) == "203.0.113.10"

    def test_external_ip_from_hostname(self, host, site):
        """Should use the first host address as a last resort."""
        site["host"] = "server.example.com"
        host.on("hostname -I", "198.51.100.7 10.0.0.5\n")
        assert detect_external_ip(site) == "198.51.100.7"

    def test_cert_path_from_config(self, host, site):
        """Should prefer the certificate named in the site config."""
        host.on(f"cat {site['nginx_conf']}", "server {\n    ssl_certificate /etc/ssl/custom.pem;\n}\n")
        assert cert_path(site) == "/etc/ssl/custom.pem"

    def test_cert_path_default(self, host, site):
        """Should fall back to the Let's Encrypt path."""
        assert cert_path(site) == "/etc/letsencrypt/live/besthammer.club/fullchain.pem"

    def test_port_bindings(self, host, site):
        """Should return non-empty lines of ss output."""
        host.on("grep ':80 '", "LISTEN 0 511 203.0.113.10:80 0.0.0.0:*\n\n")
        assert port_bindings(site) == ["LISTEN 0 511 203.0.113.10:80 0.0.0.0:*"]


class TestPrompts:
    """Tests for confirm and mysql_root_password."""

    @pytest.mark.parametrize("answer,result", [
        ("y", True),
        ("YES", True),
        ("", False),
        ("n", False),
        ("maybe", False),
    ])
    def test_confirm(self, monkeypatch, answer, result):
        """Should accept only y or yes."""
        monkeypatch.setattr("builtins.input", lambda prompt: answer)
        assert confirm("Go?") is result

    def test_confirm_assume_yes(self, monkeypatch):
        """Should not prompt with assume_yes."""
        monkeypatch.setattr("builtins.input", MagicMock(side_effect=AssertionError))
        assert confirm("Go?", assume_yes=True) is True

    def test_password_flag_wins(self, monkeypatch):
        """Should use the given password, even an empty one."""
        monkeypatch.setenv("MYSQL_ROOT_PASSWORD", "env")
        assert mysql_root_password("") == ""

    def test_password_from_env(self, monkeypatch):
        """Should read MYSQL_ROOT_PASSWORD."""
        monkeypatch.setenv("MYSQL_ROOT_PASSWORD", "env")
        assert mysql_root_password() == "env"

    def test_password_prompt(self, monkeypatch):
        """Should prompt without echo as a last resort."""
        monkeypatch.delenv("MYSQL_ROOT_PASSWORD", raising=False)
        monkeypatch.setattr(deploy_laravel.getpass, "getpass", lambda prompt: "typed")
        assert mysql_root_password() == "typed"


class TestHttpHelpers:
    """Tests for remote_http_status, remote_http_probe and wait_for_http."""

    def test_status(self, host, site):
        """Should parse curl's status code."""
        host.on("curl -s -o /dev/null", "503")
        assert remote_http_status(site, "http://localhost/") == 503

    def test_status_unreachable(self, host, site):
        """Should report 0 when curl cannot connect."""
        host.on("curl -s -o /dev/null", "000", exited=7)
        assert remote_http_status(site, "http://localhost/") == 0

    def test_post(self, host, site):
        """Should send form data as a POST."""
        remote_http_status(site, "http://localhost/api/calc", data="a=1&b=2")
        cmd = host.commands[-1]
        assert "-X POST" in cmd
        assert "-d 'a=1&b=2' http://localhost/api/calc" in cmd

    def test_probe(self, host, site):
        """Should parse code, time and body of a probe."""
        host.on("HTTPCODE", "HTTPCODE:200 TIME:0.05 SIZE:12\nBODY:\nhello world\n")
        probe = remote_http_probe(site, "http://localhost/")
        assert probe["code"] == 200
        assert probe["body"] == "hello world"

    def test_wait_retries(self, host, site):
        """Should retry until the site answers."""
        host.on("curl -s -o /dev/null", ["000", "502", "200"])
        assert wait_for_http(site, "http://localhost/") == 200
        assert len([c for c in host.commands if "curl" in c]) == 3

    def test_wait_gives_up(self, host, site):
        """Should return the last code after the retries."""
        host.on("curl -s -o /dev/null", "500")
        assert wait_for_http(site, "http://localhost/") == 500
        assert len(host.commands) == deploy_laravel.HTTP_VERIFY_RETRIES


class TestMysqlRoot:
    """Tests for mysql_root."""

    def test_pipes_sql(self, host, site):
        """Should pipe SQL through base64 into mysql as root."""
        mysql_root(site, "SELECT 1;")
        assert host.piped("mysql -uroot") == "SELECT 1;"
        assert "MYSQL_PWD" not in host.commands[-1]

    def test_password_not_in_plain_text(self, host, site):
        """Should pass the root password via MYSQL_PWD, base64 encoded."""
        mysql_root(site, "SELECT 1;", "s3cret!")
        cmd = host.commands[-1]
        assert "s3cret!" not in cmd
        assert "MYSQL_PWD=" in cmd
        assert base64.b64encode(b"s3cret!").decode() in cmd
