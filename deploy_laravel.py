#!/usr/bin/env python3
"""Deploy, diagnose and repair Laravel apps on FastPanel hosts.

Prerequisites: root SSH access to the host (key in ssh-agent or ~/.ssh), or run
on the host itself with no ``--host``. PHP-FPM, Nginx, MySQL and Composer are
expected to be installed by the panel.

Usage: uv run deploy-laravel <noun> <verb> [options]

Examples:
    uv run deploy-laravel site init myapp --domain example.com --host 203.0.113.10
    uv run deploy-laravel check pre myapp --source ./src
    uv run deploy-laravel deploy master myapp ./src
    uv run deploy-laravel check source myapp
    uv run deploy-laravel nginx bind myapp
    uv run deploy-laravel fix http500 myapp
"""

import base64
import getpass
import hashlib
import json
import os
import re
import secrets
import shlex
import ssl
import subprocess
import sys
import time
import urllib.request
import urllib.error
from datetime import datetime
from pathlib import Path
from textwrap import dedent, indent
from typing import Literal

import cyclopts
import dns.exception
import dns.resolver
from fabric import Connection
from invoke import Result, run as local_run
from invoke.exceptions import CommandTimedOut
from rich import print, print_json
from rich.errors import MarkupError
from rich.markup import escape
from rich.text import Text

app = cyclopts.App(
    name="deploy-laravel",
    help="Deploy, diagnose and repair Laravel apps on FastPanel hosts",
    sort_key=None,
)

site_app = cyclopts.App(name="site", help="Manage site descriptors", sort_key=1)
check_app = cyclopts.App(name="check", help="Pre/post deploy checks and diagnostics", sort_key=2)
deploy_app = cyclopts.App(name="deploy", help="Deploy, back up and roll back", sort_key=3)
db_app = cyclopts.App(name="db", help="Provision and back up the MySQL database", sort_key=4)
nginx_app = cyclopts.App(name="nginx", help="Configure nginx for the site", sort_key=5)
fix_app = cyclopts.App(name="fix", help="Repair broken deployments", sort_key=6)
laravel_app = cyclopts.App(name="laravel", help="Laravel maintenance tasks", sort_key=7)

app.command(site_app)
app.command(check_app)
app.command(deploy_app)
app.command(db_app)
app.command(nginx_app)
app.command(fix_app)
app.command(laravel_app)

PanelName = Literal["fastpanel", "plain"]

HTTP_VERIFY_RETRIES = 3
HTTP_VERIFY_DELAY = 5
COMPOSER_TIMEOUT = 900
NPM_TIMEOUT = 600
DISK_MIN_GB = 5
SSL_WARN_DAYS = 30
REQUIRED_PHP_VERSION = "8.1"
REQUIRED_PHP_EXTENSIONS = [
    "bcmath",
    "ctype",
    "curl",
    "fileinfo",
    "json",
    "mbstring",
    "openssl",
    "pdo",
    "pdo_mysql",
    "tokenizer",
    "xml",
    "zip",
    "gd",
    "intl",
]

DEFAULT_BACKUP_DIR = "/var/backups/website"
STAGING_ROOT = "/var/tmp/deploy-laravel"
LOG_DIR = Path("/tmp")
DNS_NAMESERVER = "8.8.8.8"
LOCAL_HOSTS = ("local", "localhost")

FASTPANEL_MARKERS = [
    "/usr/local/fastpanel",
    "/usr/local/fastpanel2",
    "/etc/nginx/fastpanel.conf",
    "/etc/nginx/fastpanel2-sites",
]
FASTPANEL_UI_PORT = 8888

SOURCE_EXCLUDE = ["/.git", "/node_modules", "/vendor", "/.env", "/storage/logs", "/.source_hash"]
REQUIRED_SOURCE_FILES = ["composer.json", "package.json", "artisan", ".env.example"]

LEGACY_DIRS = ["wp-admin", "wp-content", "wp-includes", "cgi-bin", "old", "backup"]
LEGACY_FILES = [
    "index.html",
    "index.htm",
    "default.html",
    "default.htm",
    "wp-config.php",
    "wp-config-sample.php",
    "wp-load.php",
    "wp-login.php",
    "wp-settings.php",
    "wp-cron.php",
    "wp-blog-header.php",
    "wp-links-opml.php",
    "wp-mail.php",
    "wp-signup.php",
    "wp-trackback.php",
    "wp-activate.php",
    "wp-comments-post.php",
    "xmlrpc.php",
    "readme.html",
    "license.txt",
]
OLD_PHP_FILES = ["install.php", "setup.php", "config.php", "phpinfo.php", "info.php", "test.php"]
JUNK_PATTERNS = ["*.tmp", "*.cache", ".DS_Store", "Thumbs.db"]

REPLACE_PATTERNS = [
    "app/Http/Controllers/*.php",
    "app/Models/*.php",
    "resources/views/*.blade.php",
    "resources/js/*.js",
    "resources/css/*.css",
    "database/migrations/*.php",
    "database/seeders/*.php",
    "routes/*.php",
]
NON_LARAVEL_PATTERNS = ["*.html", "*.htm", "wp-*", "*.zip", "*.tar.gz", "*.rar"]
COPY_ITEMS = ["app", "bootstrap", "config", "database", "public", "resources", "routes", "lang"]
ADDITIONAL_FILES = [
    "artisan",
    "composer.json",
    "composer.lock",
    "package.json",
    "package-lock.json",
    "vite.config.js",
    "webpack.mix.js",
    "tailwind.config.js",
    "postcss.config.js",
    ".env.example",
]
PRESERVE_ITEMS = [".env", "storage/logs", "public/uploads"]

LARAVEL_DIRS = [
    "app/Http/Controllers",
    "app/Models",
    "app/Providers",
    "bootstrap/cache",
    "config",
    "database/migrations",
    "database/seeders",
    "public",
    "resources/views",
    "routes",
    "storage/app/public",
    "storage/framework/cache/data",
    "storage/framework/sessions",
    "storage/framework/views",
    "storage/logs",
]
CRITICAL_PACKAGES = ["laravel/framework"]
LARAVEL_10_CONSTRAINTS = {"php": "^8.1", "laravel/framework": "^10.10"}

NGINX_HELPER_CONFS = ["/etc/nginx/conf.d/parking.conf", "/etc/nginx/conf.d/reuseport.conf"]
OBSOLETE_BINDING_CONFS = [
    "/etc/nginx/conf.d/local-binding.conf",
    "/etc/nginx/conf.d/universal-binding.conf",
]

PROBE_PAGES = ["/"]
SECURITY_HEADERS = ["x-frame-options", "x-content-type-options", "x-xss-protection"]
LOG_ERROR_PATTERN = "ERROR|CRITICAL|EMERGENCY"


_log_file: Path | None = None


def timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def start_log(prefix: str) -> Path:
    """Tee every message of this run into ``LOG_DIR/<prefix>_<timestamp>.log``."""
    global _log_file
    _log_file = LOG_DIR / f"{prefix}_{timestamp()}.log"
    _log_file.write_text(f"# {prefix} started {datetime.now():%Y-%m-%d %H:%M:%S}\n")
    print(f"Log: {_log_file}")
    return _log_file


def _plain(msg: str) -> str:
    try:
        return Text.from_markup(msg).plain
    except MarkupError:
        return msg


def _tee(level: str, msg: str):
    if _log_file is None:
        return
    with _log_file.open("a") as f:
        f.write(f"[{datetime.now():%H:%M:%S}] [{level}] {_plain(msg)}\n")


def log_detail(title: str, body: str):
    """Raw command output goes to the log file only."""
    if _log_file is None:
        return
    with _log_file.open("a") as f:
        f.write(f"=== {title} ===\n{body.rstrip()}\n\n")


def log(msg: str):
    print(f"[green][INFO][/green] {msg}")
    _tee("INFO", msg)


def info(msg: str):
    print(f"[blue][INFO][/blue] {msg}")
    _tee("INFO", msg)


def warn(msg: str):
    print(f"[yellow][WARN][/yellow] {msg}")
    _tee("WARN", msg)


def error(msg: str, fatal: bool = True):
    print(f"[red][ERROR][/red] {msg}")
    _tee("ERROR", msg)
    if fatal:
        sys.exit(1)


def section(msg: str):
    print(f"\n[magenta]== {msg} ==[/magenta]")
    _tee("STEP", msg)


def ok(msg: str):
    print(f"  [green][OK][/green] {msg}")
    _tee("OK", msg)


def fail(msg: str):
    print(f"  [red][FAIL][/red] {msg}")
    _tee("FAIL", msg)


def run_on(site: dict, cmd: str, timeout: int | None = None) -> Result:
    """Run ``cmd`` on the site host, or locally when the site has no host.

    Never raises on a non-zero exit; check ``result.failed``.
    """
    host = site.get("host")
    try:
        if not host:
            return local_run(cmd, hide=True, warn=True, timeout=timeout, in_stream=False)
        with Connection(
            host, user=site.get("ssh_user") or "root", connect_kwargs={"look_for_keys": True}
        ) as c:
            return c.run(cmd, hide=True, warn=True, timeout=timeout, in_stream=False)
    except CommandTimedOut as e:
        warn(f"Command timed out after {timeout}s: {escape(cmd.splitlines()[0][:80])}")
        return Result(
            stdout=e.result.stdout, stderr=e.result.stderr, command=cmd, exited=124
        )


def ssh(site: dict, cmd: str, timeout: int | None = None) -> str:
    result = run_on(site, cmd, timeout=timeout)
    if result.failed:
        error(f"Command failed: {escape((result.stderr or result.stdout).strip())}")
    return result.stdout


def ssh_ok(site: dict, cmd: str, timeout: int | None = None) -> bool:
    return not run_on(site, cmd, timeout=timeout).failed


def ssh_output(site: dict, cmd: str, timeout: int | None = None) -> str:
    """Stripped stdout, whatever the exit status."""
    return run_on(site, cmd, timeout=timeout).stdout.strip()


def ssh_script(site: dict, script: str, timeout: int | None = None, check: bool = True) -> str:
    escaped = script.replace("'", "'\\''")
    result = run_on(site, f"bash -c '{escaped}'", timeout=timeout)
    if check and result.failed:
        error(f"Script failed: {escape((result.stderr or result.stdout).strip())}")
    return result.stdout


def ssh_write_file(site: dict, path: str, content: str, mode: str | None = None, safe: bool = False) -> bool:
    """Uses base64 encoding to avoid heredoc and escaping issues."""
    encoded = base64.b64encode(content.encode()).decode()
    cmd = f"echo '{encoded}' | base64 -d > {path}"
    if mode:
        cmd = f"umask 077 && {cmd} && chmod {mode} {path}"
    result = run_on(site, cmd)
    if result.failed:
        error(f"Writing {path} failed: {escape((result.stderr or result.stdout).strip())}", fatal=not safe)
        return False
    return True


def ssh_read_file(site: dict, path: str) -> str | None:
    result = run_on(site, f"cat {path}")
    return None if result.failed else result.stdout


def remote_exists(site: dict, path: str, kind: str = "e") -> bool:
    """:param kind: test(1) flag: e, f, d, L, w, x"""
    return ssh_ok(site, f"test -{kind} {path}")


def as_web_user(site: dict, cmd: str) -> str:
    inner = f"cd {site['web_root']} && {cmd}"
    return f"sudo -u {site['web_user']} -H bash -lc {shlex.quote(inner)}"


def artisan(site: dict, args: str, timeout: int | None = 120) -> Result:
    return run_on(site, as_web_user(site, f"php artisan {args}"), timeout=timeout)


def require_root(site: dict):
    if ssh_output(site, "id -u") != "0":
        error(f"Root privileges required on {site.get('host') or 'localhost'} (ssh_user: root)")


def rsync(local: str, site: dict, remote: str, exclude: list[str] | None = None):
    ssh_opts = (
        "ssh -o StrictHostKeyChecking=no "
        "-o UserKnownHostsFile=/dev/null "
        "-o ServerAliveInterval=60 "
        "-o ServerAliveCountMax=3 "
        "-o Compression=yes "
        "-o LogLevel=ERROR"
    )
    host = site.get("host")
    user = site.get("ssh_user") or "root"

    cmd = ["rsync", "-az", "--delete", "--partial"]
    if host:
        cmd.extend(["-e", ssh_opts])
    for ex in exclude or []:
        cmd.extend(["--exclude", ex])
    target = f"{user}@{host}:{remote}/" if host else f"{remote}/"
    cmd.extend([f"{local}/", target])

    ssh(site, f"mkdir -p {remote}")
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode == 0:
        return

    if "Result too large" in result.stderr or "unexpected end of file" in result.stderr:
        log("rsync failed with large file error, falling back to tar...")
        _rsync_tar_fallback(local, site, remote, exclude)
    else:
        error(f"rsync failed: {escape(result.stderr.strip())}")


def _rsync_tar_fallback(local: str, site: dict, remote: str, exclude: list[str] | None):
    """Fallback to tar + scp for large transfers when rsync fails."""
    import tempfile

    exclude_args = []
    for ex in exclude or []:
        exclude_args.extend(["--exclude", "./" + ex.lstrip("/")])

    with tempfile.NamedTemporaryFile(suffix=".tar.gz", delete=False) as tmp:
        result = subprocess.run(
            ["tar", "-czf", tmp.name, "-C", local, *exclude_args, "."],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            error(f"tar creation failed: {escape(result.stderr.strip())}")
        tar_path = tmp.name

    try:
        remote_tar = f"/tmp/deploy_{int(time.time())}.tar.gz"
        host = site.get("host")
        if host:
            log("Uploading tar archive...")
            result = subprocess.run(
                [
                    "scp",
                    "-o", "StrictHostKeyChecking=no",
                    "-o", "UserKnownHostsFile=/dev/null",
                    "-o", "Compression=yes",
                    tar_path,
                    f"{site.get('ssh_user') or 'root'}@{host}:{remote_tar}",
                ],
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                error(f"scp upload failed: {escape(result.stderr.strip())}")
        else:
            remote_tar = tar_path

        ssh_script(site, f"set -e\nmkdir -p {remote}\ntar -xzf {remote_tar} -C {remote}\nrm -f {remote_tar}")
        log("Transfer complete")
    finally:
        Path(tar_path).unlink(missing_ok=True)


def compute_hash(source: str, exclude: list[str] | None = None) -> str:
    """:return: MD5 hex digest of all source files

    Excludes are paths from the source root, as given to rsync (``/vendor``).
    """
    source_path = Path(source)
    if exclude is None:
        exclude = SOURCE_EXCLUDE
    exclude = [ex.lstrip("/") for ex in exclude]

    hasher = hashlib.md5()
    for f in sorted(source_path.rglob("*")):
        rel = str(f.relative_to(source_path))
        if f.is_file() and not any(rel == ex or rel.startswith(f"{ex}/") for ex in exclude):
            hasher.update(rel.encode())
            hasher.update(f.read_bytes())
    return hasher.hexdigest()


def confirm(question: str, assume_yes: bool = False) -> bool:
    """Only an explicit y/yes counts as consent."""
    if assume_yes:
        return True
    return input(f"{question} (y/N): ").strip().lower() in ("y", "yes")


def ask(question: str, default: str | None = None) -> str | None:
    suffix = f" [{default}]" if default else ""
    answer = input(f"{question}{suffix}: ").strip()
    return answer or default


def ask_secret(question: str) -> str:
    return getpass.getpass(f"{question}: ")


def mysql_root_password(given: str | None = None) -> str:
    """Flag, then ``MYSQL_ROOT_PASSWORD``, then a prompt. Empty means socket auth."""
    if given is not None:
        return given
    if "MYSQL_ROOT_PASSWORD" in os.environ:
        return os.environ["MYSQL_ROOT_PASSWORD"]
    return ask_secret("MySQL root password (empty for socket auth)")


def site_path(name: str) -> Path:
    return Path(f"{name}.site.json")


def fastpanel_user(domain: str) -> str:
    """FastPanel names the site owner after the domain: besthammer.club -> besthammer_c_usr."""
    labels = domain.lower().removeprefix("www.").split(".")
    first = re.sub(r"[^a-z0-9]", "_", labels[0])
    if len(labels) > 1 and labels[1]:
        return f"{first}_{labels[1][0]}_usr"
    return f"{first}_usr"


def web_user_candidates(domain: str) -> list[str]:
    return [fastpanel_user(domain), re.sub(r"[^a-z0-9]", "_", domain.lower())]


def default_db_names(domain: str) -> tuple[str, str]:
    base = re.sub(r"[^a-z0-9]", "_", domain.lower().removeprefix("www.").split(".")[0])[:24]
    return f"{base}_db", f"{base}_user"


def site_defaults(domain: str, panel: PanelName = "fastpanel", web_user: str | None = None) -> dict:
    if panel == "fastpanel":
        user = web_user or fastpanel_user(domain)
        web_root = f"/var/www/{user}/data/www/{domain}"
        nginx_conf = f"/etc/nginx/fastpanel2-sites/{user}/{domain}.conf"
    else:
        user = web_user or "www-data"
        web_root = "/var/www/html"
        nginx_conf = f"/etc/nginx/sites-available/{domain}"
    db_name, db_user = default_db_names(domain)
    return {
        "domain": domain,
        "host": None,
        "ssh_user": "root",
        "panel": panel,
        "web_user": user,
        "web_root": web_root,
        "nginx_conf": nginx_conf,
        "php_version": None,
        "external_ip": None,
        "db_name": db_name,
        "db_user": db_user,
        "backup_dir": DEFAULT_BACKUP_DIR,
    }


def load_site(name: str) -> dict:
    path = site_path(name)
    if not path.exists():
        error(f"Site file not found: {path} (create it with: deploy-laravel site init {name} --domain ...)")
    data = json.loads(path.read_text())
    if "domain" not in data:
        error(f"{path} has no domain")
    defaults = site_defaults(data["domain"], data.get("panel", "fastpanel"), data.get("web_user"))
    for key, value in defaults.items():
        data.setdefault(key, value)
    data.setdefault("name", name)
    return data


def save_site(name: str, data: dict):
    site_path(name).write_text(json.dumps(data, indent=2))


def is_valid_ip(ip: str) -> bool:
    parts = ip.split(".")
    return len(parts) == 4 and all(
        part.isdigit() and 0 <= int(part) <= 255 for part in parts
    )


def detect_panel(site: dict) -> PanelName:
    probe = " || ".join(f"test -e {marker}" for marker in FASTPANEL_MARKERS)
    return "fastpanel" if ssh_ok(site, probe) else "plain"


def detect_web_user(site: dict, domain: str, explicit: str | None = None) -> str:
    """Explicit user, then the FastPanel owner derived from the domain, then www-data."""
    if explicit:
        return explicit
    for candidate in web_user_candidates(domain):
        if ssh_ok(site, f"id -u {candidate}"):
            return candidate
    return "www-data"


def version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version or ""))


def version_at_least(version: str, minimum: str) -> bool:
    have, need = list(version_key(version)), list(version_key(minimum))
    width = max(len(have), len(need))
    have += [0] * (width - len(have))
    need += [0] * (width - len(need))
    return have >= need


def detect_php_version(site: dict, explicit: str | None = None) -> str | None:
    """Explicit version, else the highest /etc/php/<v>/fpm, else the CLI version."""
    if explicit:
        return explicit
    versions = re.findall(r"/etc/php/(\d+\.\d+)/fpm", ssh_output(site, "ls -d /etc/php/*/fpm 2>/dev/null"))
    if versions:
        return max(versions, key=version_key)
    out = ssh_output(site, "php -r 'echo PHP_MAJOR_VERSION.\".\".PHP_MINOR_VERSION;' 2>/dev/null")
    return out if re.fullmatch(r"\d+\.\d+", out) else None


def detect_external_ip(site: dict) -> str | None:
    conf = ssh_read_file(site, site["nginx_conf"]) or ""
    ips = [ip for ip in find_listen_ips(conf) if ip not in ("127.0.0.1", "0.0.0.0")]
    if ips:
        return ips[0]
    if site.get("host") and is_valid_ip(site["host"]):
        return site["host"]
    out = ssh_output(site, "hostname -I 2>/dev/null")
    return out.split()[0] if out else None


ENV_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")

ENV_TEMPLATE = dedent("""
    APP_NAME=Laravel
    APP_ENV=production
    APP_KEY=
    APP_DEBUG=false
    APP_URL=https://{domain}

    LOG_CHANNEL=stack
    LOG_LEVEL=error

    DB_CONNECTION=mysql
    DB_HOST=127.0.0.1
    DB_PORT=3306
    DB_DATABASE={db_name}
    DB_USERNAME={db_user}
    DB_PASSWORD=

    CACHE_DRIVER=file
    SESSION_DRIVER=file
    QUEUE_CONNECTION=sync
""").lstrip()


def _unquote(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith('"'):
        match = re.match(r'"((?:[^"\\]|\\.)*)"', raw)
        if match:
            return re.sub(r"\\(.)", r"\1", match.group(1))
    elif raw.startswith("'"):
        match = re.match(r"'([^']*)'", raw)
        if match:
            return match.group(1)
    return re.split(r"\s+#", raw, maxsplit=1)[0].strip()


def parse_env(text: str) -> dict[str, str]:
    """Parse dotenv text: comments, blank lines, ``export`` and quoted values."""
    env = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        match = ENV_LINE.match(line)
        if match:
            env[match.group(1)] = _unquote(match.group(2))
    return env


def format_env_value(value: str) -> str:
    if re.search(r"[\s#\"'$\\]", value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def set_env_values(text: str, updates: dict[str, str]) -> str:
    """Replace ``KEY=...`` lines in place and append missing keys.

    Applying the same updates twice yields the same text.
    """
    lines = text.splitlines()
    seen = set()
    for i, line in enumerate(lines):
        match = ENV_LINE.match(line)
        if match and match.group(1) in updates:
            key = match.group(1)
            lines[i] = f"{key}={format_env_value(str(updates[key]))}"
            seen.add(key)
    for key, value in updates.items():
        if key not in seen:
            lines.append(f"{key}={format_env_value(str(value))}")
    return "\n".join(lines) + "\n"


def generate_app_key() -> str:
    return "base64:" + base64.b64encode(secrets.token_bytes(32)).decode()


def production_env_updates(site: dict) -> dict[str, str]:
    return {
        "APP_ENV": "production",
        "APP_DEBUG": "false",
        "APP_URL": f"https://{site['domain']}",
    }


def env_path(site: dict) -> str:
    return f"{site['web_root']}/.env"


def read_env(site: dict) -> str | None:
    return ssh_read_file(site, env_path(site))


def chown_env(site: dict, safe: bool = False) -> bool:
    path = env_path(site)
    result = run_on(site, f"chown {site['web_user']}:{site['web_user']} {path} && chmod 640 {path}")
    if result.failed:
        error(f"Cannot set owner of {path}: {escape(result.stderr.strip())}", fatal=not safe)
        return False
    return True


def write_env_updates(site: dict, updates: dict[str, str], safe: bool = False) -> bool:
    """:return: True if .env changed and was written"""
    current = read_env(site) or ""
    updated = set_env_values(current, updates)
    if updated == current:
        return False
    if not ssh_write_file(site, env_path(site), updated, mode="640", safe=safe):
        return False
    return chown_env(site, safe)


def ensure_env(site: dict, safe: bool = False) -> bool:
    """Create .env from .env.example, or from a minimal template.

    With ``safe`` a failing step is reported and False returned instead of exiting.

    :return: True if created
    """
    path = env_path(site)
    if remote_exists(site, path, "f"):
        return False
    example = f"{site['web_root']}/.env.example"
    if remote_exists(site, example, "f"):
        result = run_on(site, f"cp {example} {path}")
        if result.failed:
            error(f"Cannot copy .env.example: {escape(result.stderr.strip())}", fatal=not safe)
            return False
        log("Created .env from .env.example")
    else:
        template = ENV_TEMPLATE.format(domain=site["domain"], db_name=site["db_name"], db_user=site["db_user"])
        if not ssh_write_file(site, path, template, safe=safe):
            return False
        warn("No .env.example found, wrote a minimal .env")
    return chown_env(site, safe)


class Report:
    """Tally of checks. Critical failures make the target not ready, the rest only warn."""

    def __init__(self, title: str):
        self.title = title
        self.passed = 0
        self.failures: list[str] = []
        self.warnings: list[str] = []

    @property
    def total(self) -> int:
        return self.passed + len(self.failures) + len(self.warnings)

    @property
    def ready(self) -> bool:
        return not self.failures

    def score(self) -> int:
        return round(100 * self.passed / self.total) if self.total else 0

    def check(self, description: str, passed, *, critical: bool = True, hint: str | None = None) -> bool:
        detail = f"{description} ({hint})" if hint and not passed else description
        if passed:
            self.passed += 1
            ok(description)
        elif critical:
            self.failures.append(detail)
            fail(detail)
        else:
            self.warnings.append(detail)
            print(f"  [yellow][WARN][/yellow] {detail}")
            _tee("WARN", detail)
        return bool(passed)

    def summary(self) -> bool:
        section(f"{self.title}: summary")
        line = (
            f"Total: {self.total}  Passed: {self.passed}  "
            f"Failed: {len(self.failures)}  Warnings: {len(self.warnings)}  "
            f"Health: {self.score()}%"
        )
        print(line)
        _tee("INFO", line)
        for failure in self.failures:
            print(f"  [red]- {failure}[/red]")
        for warning in self.warnings:
            print(f"  [yellow]- {warning}[/yellow]")
        if self.ready:
            log(f"{self.title}: ready")
        else:
            error(f"{self.title}: {len(self.failures)} critical issue(s)", fatal=False)
        return self.ready


def classify_status(code: int | None) -> str:
    if not code:
        return "unreachable"
    if 200 <= code < 400:
        return "ok"
    if 500 <= code < 600:
        return "server_error"
    return "other"


def parse_curl_probe(output: str) -> dict:
    """Parse the ``HTTPCODE:.. TIME:.. SIZE:..`` line and ``BODY:`` preview of a probe."""
    body = output.split("BODY:\n", 1)[1].strip()[:200] if "BODY:\n" in output else ""
    match = re.search(r"HTTPCODE:(\d+)\s+TIME:([\d.]+)\s+SIZE:([\d.]+)", output)
    if not match:
        return {"code": 0, "time": 0.0, "size": 0, "body": body}
    return {
        "code": int(match.group(1)),
        "time": float(match.group(2)),
        "size": int(float(match.group(3))),
        "body": body,
    }


def backup_name(domain: str, ts: str | None = None) -> str:
    return f"backup_{domain}_{ts or timestamp()}"


MYSQL_IDENT = re.compile(r"[A-Za-z0-9_]+")


def quote_ident(name: str) -> str:
    if not MYSQL_IDENT.fullmatch(name or ""):
        error(f"Invalid MySQL identifier: {name!r} (use letters, digits and _)")
    return f"`{name}`"


def quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def build_provision_sql(db: str, user: str, password: str, host: str = "localhost") -> str:
    """Idempotent: safe to run against an existing database and user."""
    if not MYSQL_IDENT.fullmatch(user or ""):
        error(f"Invalid MySQL user: {user!r} (use letters, digits and _)")
    account = f"{quote_literal(user)}@{quote_literal(host)}"
    return "\n".join([
        f"CREATE DATABASE IF NOT EXISTS {quote_ident(db)} CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
        f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {quote_literal(password)};",
        f"ALTER USER {account} IDENTIFIED BY {quote_literal(password)};",
        f"GRANT ALL PRIVILEGES ON {quote_ident(db)}.* TO {account};",
        "FLUSH PRIVILEGES;",
    ]) + "\n"


def scheduler_entry(site: dict) -> str:
    return f"* * * * * cd {site['web_root']} && php artisan schedule:run >> /dev/null 2>&1"


def add_cron_entry(existing: str, entry: str) -> tuple[str, bool]:
    """:return: (crontab text with ``entry`` exactly once, changed)"""
    lines = existing.splitlines()
    if sum(1 for line in lines if line.strip() == entry) == 1:
        return existing, False
    kept = [line for line in lines if line.strip() != entry]
    kept.append(entry)
    return "\n".join(kept) + "\n", True


def pick_fpm_socket(paths: list[str], version: str | None, web_user: str | None) -> str:
    """Versioned pool socket, then a FastPanel per-user socket, then any PHP socket, else TCP."""
    sockets = [p for p in paths if p.endswith(".sock")]
    if version:
        for p in sockets:
            if Path(p).name == f"php{version}-fpm.sock":
                return f"unix:{p}"
    if web_user:
        for p in sockets:
            if web_user in Path(p).name:
                return f"unix:{p}"
    for p in sockets:
        if re.fullmatch(r"php[\d.]*-fpm\.sock", Path(p).name):
            return f"unix:{p}"
    return "127.0.0.1:9000"


def php_fpm_socket(site: dict) -> str:
    out = ssh_output(site, "ls /var/run/php/*.sock /run/php/*.sock /var/run/*.sock 2>/dev/null")
    return pick_fpm_socket(out.split(), site.get("php_version"), site.get("web_user"))


def php_fpm_service(version: str | None) -> str:
    return f"php{version}-fpm" if version else "php-fpm"


def pin_laravel_10(composer: dict) -> tuple[dict, bool]:
    require = composer.setdefault("require", {})
    changed = False
    for package, constraint in LARAVEL_10_CONSTRAINTS.items():
        if require.get(package) != constraint:
            require[package] = constraint
            changed = True
    return composer, changed


LISTEN_LINE = re.compile(r"^(\s*)listen\s+([^;]+);")
WILDCARD_LISTENS = ("80", "*:80", "0.0.0.0:80")


def find_listen_directives(text: str) -> list[str]:
    directives = []
    for line in text.splitlines():
        match = LISTEN_LINE.match(line)
        if match:
            directives.append(match.group(2).strip())
    return directives


def find_listen_ips(text: str) -> list[str]:
    ips = []
    for directive in find_listen_directives(text):
        match = re.match(r"(\d+\.\d+\.\d+\.\d+):\d+", directive)
        if match and match.group(1) not in ips:
            ips.append(match.group(1))
    return ips


def add_local_listens(text: str, external_ip: str, universal: bool = True) -> tuple[str, bool]:
    """Make a server bound to ``external_ip:80`` also answer on 127.0.0.1 (and on all addresses).

    The new directives go right after each ``listen <external_ip>:80`` line with the
    same indentation. A second run changes nothing.
    """
    has_wildcard = any(d.split()[0] in WILDCARD_LISTENS for d in find_listen_directives(text))
    lines = text.splitlines()
    out = []
    changed = False
    for i, line in enumerate(lines):
        out.append(line)
        match = LISTEN_LINE.match(line)
        if not match or match.group(2).split()[0] != f"{external_ip}:80":
            continue
        group = []
        for following in lines[i + 1:]:
            listen = LISTEN_LINE.match(following)
            if not listen:
                break
            group.append(listen.group(2).split()[0])
        pad = match.group(1)
        if "127.0.0.1:80" not in group:
            out.append(f"{pad}listen 127.0.0.1:80;")
            changed = True
        if universal and not has_wildcard:
            out.append(f"{pad}listen 80;")
            changed = True
    patched = "\n".join(out) + ("\n" if text.endswith("\n") else "")
    return patched, changed


def _server(directives: list[str], body: str = "") -> str:
    inner = "\n".join(directives)
    if body:
        inner += "\n\n" + body
    return "server {\n" + indent(inner, "    ") + "\n}"


def generate_laravel_server_block(
    server_name: str,
    root: str,
    fastcgi_pass: str,
    listen: tuple[str, ...] = ("80", "[::]:80"),
    ssl_domain: str | None = None,
) -> str:
    """
    With ssl_domain, port 80 only redirects to HTTPS (ACME challenges excepted)
    and the app is served from a ``443 ssl http2`` block using Let's Encrypt paths.

    :param server_name: e.g. "example.com www.example.com"
    :param root: Laravel project root; nginx serves ``<root>/public``
    :param fastcgi_pass: ``unix:/path.sock`` or ``host:port``
    :param listen: listen directives for the port 80 block
    :param ssl_domain: certificate name under /etc/letsencrypt/live
    """
    public = f"{root}/public"
    app_body = dedent(f"""
        add_header X-Frame-Options "SAMEORIGIN";
        add_header X-Content-Type-Options "nosniff";
        add_header X-XSS-Protection "1; mode=block";

        index index.php;
        charset utf-8;
        client_max_body_size 64m;

        gzip on;
        gzip_vary on;
        gzip_types text/plain text/css application/json application/javascript text/xml application/xml image/svg+xml;

        location / {{
            try_files $uri $uri/ /index.php?$query_string;
        }}

        location = /favicon.ico {{ access_log off; log_not_found off; }}
        location = /robots.txt  {{ access_log off; log_not_found off; }}

        error_page 404 /index.php;

        location ~ \\.php$ {{
            fastcgi_pass {fastcgi_pass};
            include fastcgi_params;
            fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
            fastcgi_hide_header X-Powered-By;
            fastcgi_read_timeout 300;
        }}

        location ~* \\.(css|js|png|jpg|jpeg|gif|ico|svg|woff2?)$ {{
            expires 30d;
            add_header Cache-Control "public, immutable";
            try_files $uri =404;
        }}

        location ~ /\\.(?!well-known).* {{
            deny all;
        }}
    """).strip()

    http_directives = [f"listen {item};" for item in listen]
    http_directives += [f"server_name {server_name};", f"root {public};"]
    if not ssl_domain:
        return _server(http_directives, app_body)

    redirect_body = dedent(f"""
        location /.well-known/acme-challenge/ {{
            root {public};
        }}

        location / {{
            return 301 https://$host$request_uri;
        }}
    """).strip()
    live = f"/etc/letsencrypt/live/{ssl_domain}"
    ssl_directives = [
        "listen 443 ssl http2;",
        "listen [::]:443 ssl http2;",
        f"server_name {server_name};",
        f"root {public};",
        "",
        f"ssl_certificate {live}/fullchain.pem;",
        f"ssl_certificate_key {live}/privkey.pem;",
        "ssl_protocols TLSv1.2 TLSv1.3;",
    ]
    return _server(http_directives, redirect_body) + "\n\n" + _server(ssl_directives, app_body)


def legacy_cleanup_script(root: str) -> str:
    """Shell script deleting WordPress/default leftovers. Never touches .env, storage/ or vendor/."""
    dirs = " ".join(LEGACY_DIRS)
    files = " ".join(LEGACY_FILES + OLD_PHP_FILES)
    names = " -o ".join(f"-name '{pattern}'" for pattern in JUNK_PATTERNS)
    return dedent(f"""
        cd {root} || exit 0
        for d in {dirs}; do
            if [ -d "$d" ]; then rm -rf "$d" && echo "removed $d/"; fi
        done
        for f in {files}; do
            if [ -f "$f" ]; then rm -f "$f" && echo "removed $f"; fi
        done
        find . \\( -path ./vendor -o -path ./storage -o -path ./node_modules \\) -prune -o -type f \\( {names} \\) -print -delete
    """).strip()


def remote_http_status(site: dict, url: str, timeout: int = 10, data: str | None = None) -> int:
    """HTTP status seen from the host itself, 0 when the connection fails.

    :param data: urlencoded form body, sent as a POST
    """
    cmd = f"curl -s -o /dev/null -m {timeout} -w '%{{http_code}}'"
    if data is not None:
        cmd += f" -X POST -H 'Content-Type: application/x-www-form-urlencoded' -d {shlex.quote(data)}"
    out = ssh_output(site, f"{cmd} {shlex.quote(url)}", timeout=timeout + 5)
    return int(out) if out.isdigit() else 0


def remote_http_probe(site: dict, url: str, timeout: int = 15) -> dict:
    """:return: dict with code, time (seconds), size (bytes) and a body preview"""
    script = dedent(f"""
        tmp=$(mktemp)
        curl -s -o "$tmp" -m {timeout} -w "HTTPCODE:%{{http_code}} TIME:%{{time_total}} SIZE:%{{size_download}}\\n" {shlex.quote(url)}
        echo "BODY:"
        head -c 500 "$tmp"
        rm -f "$tmp"
    """).strip()
    return parse_curl_probe(ssh_script(site, script, timeout=timeout + 5, check=False))


def check_http_status(url: str, timeout: int = 5) -> tuple[int | None, str]:
    """Check HTTP/HTTPS status of a URL from this machine.

    :param url: URL to check (http:// or https://)
    :param timeout: Connection timeout in seconds
    :return: Tuple of (status_code, first_line_of_response) or (None, error_message)
    """
    try:
        req = urllib.request.Request(url, method="HEAD")
        with urllib.request.urlopen(req, timeout=timeout) as response:
            status_code = response.getcode()
            return status_code, f"HTTP/{response.version} {status_code} {response.reason}"
    except urllib.error.HTTPError as e:
        return e.code, f"HTTP {e.code} {e.reason}"
    except (urllib.error.URLError, OSError) as e:
        return None, str(e)


def fetch_headers(url: str, timeout: int = 5) -> dict[str, str]:
    """:return: response headers with lowercased names, empty when unreachable"""
    try:
        req = urllib.request.Request(url, method="HEAD")
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return {k.lower(): v for k, v in response.headers.items()}
    except urllib.error.HTTPError as e:
        return {k.lower(): v for k, v in e.headers.items()}
    except (urllib.error.URLError, OSError):
        return {}


def resolve_dns_a(domain: str, nameserver: str = DNS_NAMESERVER) -> str | None:
    """Resolve domain to IPv4 address using specified nameserver.

    :param domain: Domain name to resolve
    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP address, or None if resolution fails
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


def cert_path(site: dict) -> str:
    """Certificate named in the site's nginx config, else the Let's Encrypt default."""
    conf = ssh_read_file(site, site["nginx_conf"]) or ""
    match = re.search(r"^\s*ssl_certificate\s+(\S+);", conf, re.M)
    if match:
        return match.group(1)
    return f"/etc/letsencrypt/live/{site['domain']}/fullchain.pem"


def parse_cert_enddate(output: str, now: float | None = None) -> int | None:
    """Days left from ``openssl x509 -enddate`` output (``notAfter=Jan  5 12:00:00 2027 GMT``)."""
    match = re.search(r"notAfter=(.+)", output)
    if not match:
        return None
    try:
        expires = ssl.cert_time_to_seconds(match.group(1).strip())
    except ValueError:
        return None
    return int((expires - (now if now is not None else time.time())) // 86400)


def cert_days_left(site: dict) -> int | None:
    out = ssh_output(site, f"openssl x509 -enddate -noout -in {cert_path(site)} 2>/dev/null")
    return parse_cert_enddate(out)


def port_bindings(site: dict, port: int = 80) -> list[str]:
    out = ssh_output(
        site, f"ss -tlnp 2>/dev/null | grep ':{port} ' || netstat -tlnp 2>/dev/null | grep ':{port} '"
    )
    return [line for line in out.splitlines() if line.strip()]


def service_active(site: dict, unit: str) -> bool:
    return ssh_output(site, f"systemctl is-active {unit} 2>/dev/null") == "active"


def reload_nginx(site: dict) -> bool:
    if ssh_ok(site, "systemctl reload nginx"):
        return True
    warn("nginx reload failed, restarting...")
    return ssh_ok(site, "systemctl restart nginx")


def restart_services(site: dict, safe: bool = False) -> bool:
    """PHP-FPM restart, then nginx reload (restart as fallback)."""
    fpm = php_fpm_service(site.get("php_version"))
    good = True
    if ssh_ok(site, f"systemctl restart {fpm}"):
        log(f"Restarted {fpm}")
    else:
        error(f"Failed to restart {fpm}", fatal=not safe)
        good = False
    if reload_nginx(site):
        log("Reloaded nginx")
    else:
        error("Failed to reload nginx", fatal=not safe)
        good = False
    return good


def _mysql_pwd(password: str) -> str:
    """Env prefix passing the password to mysql without putting it in plain text on the command line."""
    if not password:
        return ""
    encoded = base64.b64encode(password.encode()).decode()
    return f"MYSQL_PWD=\"$(echo '{encoded}' | base64 -d)\" "


def mysql_root(site: dict, sql: str, password: str = "") -> Result:
    """Pipe SQL to ``mysql -uroot``. An empty password means unix socket auth."""
    encoded = base64.b64encode(sql.encode()).decode()
    return run_on(site, f"echo '{encoded}' | base64 -d | {_mysql_pwd(password)}mysql -uroot")


def db_credentials(site: dict) -> dict[str, str]:
    env = parse_env(read_env(site) or "")
    return {k: v for k, v in env.items() if k.startswith("DB_")}


def credentials_path(site: dict) -> str:
    return f"/root/{site['domain']}_db_credentials.txt"


def dump_database(site: dict, path: str) -> bool:
    """mysqldump with the app's own credentials from .env. A failed dump only warns."""
    creds = db_credentials(site)
    if not creds.get("DB_DATABASE") or not creds.get("DB_USERNAME"):
        warn("No database credentials in .env, skipping database dump")
        return False
    cmd = (
        f"{_mysql_pwd(creds.get('DB_PASSWORD', ''))}mysqldump "
        f"-u{shlex.quote(creds['DB_USERNAME'])} -h {shlex.quote(creds.get('DB_HOST') or '127.0.0.1')} "
        f"--single-transaction --routines {shlex.quote(creds['DB_DATABASE'])} > {path}"
    )
    if ssh_ok(site, f"umask 077 && {cmd}", timeout=COMPOSER_TIMEOUT):
        log(f"Database dumped to {path}")
        return True
    run_on(site, f"rm -f {path}")
    warn("Database dump failed, continuing without it")
    return False


def create_backup(site: dict, with_db: bool = True) -> str:
    """:return: backup path prefix (``<backup_dir>/backup_<domain>_<ts>``)"""
    base = f"{site['backup_dir']}/{backup_name(site['domain'])}"
    ssh(site, f"mkdir -p {site['backup_dir']} && chmod 700 {site['backup_dir']}")
    if remote_exists(site, site["web_root"], "d"):
        log(f"Backing up files to {base}_files.tar.gz")
        ssh(
            site,
            f"tar -czf {base}_files.tar.gz -C {site['web_root']} . || [ $? -eq 1 ]",
            timeout=COMPOSER_TIMEOUT,
        )
    else:
        warn(f"{site['web_root']} does not exist yet, no files to back up")
    if with_db:
        dump_database(site, f"{base}_database.sql")
    return base


def list_backups(site: dict) -> list[str]:
    """:return: files tarballs, newest first"""
    out = ssh_output(
        site, f"ls -1t {site['backup_dir']}/backup_{site['domain']}_*_files.tar.gz 2>/dev/null"
    )
    return [line for line in out.splitlines() if line.strip()]


def clean_legacy_files(site: dict) -> int:
    out = ssh_script(site, legacy_cleanup_script(site["web_root"]), check=False)
    removed = [line for line in out.splitlines() if line.strip()]
    log_detail("legacy cleanup", out)
    if removed:
        log(f"Removed {len(removed)} legacy file(s)/dir(s)")
    else:
        log("No legacy files found")
    return len(removed)


def upload_source(site: dict, source: str, force: bool = False) -> str | None:
    """rsync to a staging dir, then copy into the web root including dotfiles.

    :return: hash of the uploaded source, for ``record_source_hash`` once the
        deploy has finished, or None when the source matches the deployed one
        and nothing was copied
    """
    source = str(Path(source).resolve())
    if not Path(source).is_dir():
        error(f"Source directory not found: {source}")
    root = site["web_root"]
    local_hash = compute_hash(source)
    remote_hash = ssh_output(site, f"cat {root}/.source_hash 2>/dev/null")
    if not force and remote_hash and local_hash == remote_hash:
        log("Source unchanged, skipping upload")
        return None

    staging = f"{STAGING_ROOT}/{site['domain']}"
    log(f"Uploading {source} to {staging}...")
    rsync(source, site, staging, exclude=SOURCE_EXCLUDE)
    ssh_script(site, f"set -e\nmkdir -p {root}\ncp -a {staging}/. {root}/")
    log("Source copied into web root")
    return local_hash


def record_source_hash(site: dict, source_hash: str):
    path = f"{site['web_root']}/.source_hash"
    ssh(site, f'echo "{source_hash}" > {path} && chown {site["web_user"]}:{site["web_user"]} {path}')


def set_permissions(site: dict, safe: bool = False) -> bool:
    root, user = site["web_root"], site["web_user"]
    script = dedent(f"""
        set -e
        cd {root}
        mkdir -p storage/framework/cache/data storage/framework/sessions storage/framework/views storage/logs bootstrap/cache
        chown -R {user}:{user} {root}
        find {root} \\( -path {root}/vendor/bin -o -path {root}/node_modules/.bin \\) -prune -o -type f -exec chmod 644 {{}} +
        find {root} -type d -exec chmod 755 {{}} +
        chmod -R 775 storage bootstrap/cache
        if [ -f artisan ]; then chmod +x artisan; fi
        if [ -f .env ]; then chmod 640 .env; fi
    """).strip()
    result = run_on(site, f"bash -c {shlex.quote(script)}", timeout=COMPOSER_TIMEOUT)
    if result.failed:
        error(f"Setting permissions failed: {escape(result.stderr.strip())}", fatal=not safe)
        return False
    log(f"Permissions set (owner {user}, storage and bootstrap/cache writable)")
    return True


def install_composer(site: dict, timeout: int = COMPOSER_TIMEOUT, safe: bool = False) -> bool:
    root = site["web_root"]
    if not remote_exists(site, f"{root}/composer.json", "f"):
        error("composer.json not found in web root", fatal=not safe)
        return False
    run_on(site, as_web_user(site, "composer clear-cache"), timeout=120)
    if not ssh_ok(site, as_web_user(site, "composer validate --no-check-publish --no-check-all")):
        warn("composer validate reported problems")

    log(f"Running composer install (timeout {timeout}s)...")
    result = run_on(
        site,
        as_web_user(site, "composer install --no-dev --optimize-autoloader --no-interaction"),
        timeout=timeout,
    )
    log_detail("composer install", result.stdout + result.stderr)
    if result.failed:
        error(f"composer install failed: {escape(result.stderr.strip()[-500:])}", fatal=not safe)
        return False

    missing = [p for p in CRITICAL_PACKAGES if not remote_exists(site, f"{root}/vendor/{p}", "d")]
    if not remote_exists(site, f"{root}/vendor/autoload.php", "f"):
        missing.append("vendor/autoload.php")
    if missing:
        error(f"Missing after composer install: {', '.join(missing)}", fatal=not safe)
        return False
    run_on(site, as_web_user(site, "composer dump-autoload --optimize --no-interaction"), timeout=300)
    log("Composer dependencies installed")
    return True


def install_assets(site: dict, safe: bool = False) -> bool:
    if not remote_exists(site, f"{site['web_root']}/package.json", "f"):
        log("No package.json, skipping asset build")
        return True
    if not ssh_ok(site, "command -v npm"):
        warn("npm not installed, skipping asset build")
        return False
    for cmd in ("npm install --no-audit --no-fund", "npm run build"):
        log(f"Running {cmd}...")
        result = run_on(site, as_web_user(site, cmd), timeout=NPM_TIMEOUT)
        log_detail(cmd, result.stdout + result.stderr)
        if result.failed:
            error(f"{cmd} failed: {escape(result.stderr.strip()[-500:])}", fatal=not safe)
            return False
    log("Assets built")
    return True


def provision_database(
    site: dict, db_name: str, db_user: str, db_password: str, root_password: str = ""
) -> bool:
    """Create database and user (idempotent), save credentials, point .env at them."""
    sql = build_provision_sql(db_name, db_user, db_password)
    result = mysql_root(site, sql, root_password)
    if result.failed:
        error(f"Database provisioning failed: {escape(result.stderr.strip())}")
    log(f"Database {db_name} and user {db_user} ready")

    credentials = dedent(f"""
        # {site['domain']} database credentials ({datetime.now():%Y-%m-%d %H:%M:%S})
        DB_DATABASE={db_name}
        DB_USERNAME={db_user}
        DB_PASSWORD={db_password}
    """).lstrip()
    ssh_write_file(site, credentials_path(site), credentials, mode="600")
    log(f"Credentials saved to {credentials_path(site)}")

    write_env_updates(site, {
        "DB_CONNECTION": "mysql",
        "DB_HOST": "127.0.0.1",
        "DB_PORT": "3306",
        "DB_DATABASE": db_name,
        "DB_USERNAME": db_user,
        "DB_PASSWORD": db_password,
    })
    return True


def optimize_laravel(site: dict) -> bool:
    """Clear then rebuild caches and link storage. Failures only warn."""
    good = True
    for args in ("config:clear", "route:clear", "view:clear", "cache:clear"):
        if artisan(site, args).failed:
            warn(f"artisan {args} failed")
    for args in ("config:cache", "route:cache", "view:cache"):
        result = artisan(site, args)
        if result.failed:
            warn(f"artisan {args} failed: {escape(result.stderr.strip()[-300:])}")
            good = False
    if remote_exists(site, f"{site['web_root']}/public/storage", "L"):
        log("public/storage link exists")
    elif artisan(site, "storage:link").failed:
        warn("artisan storage:link failed")
        good = False
    if good:
        log("Laravel caches rebuilt")
    return good


def ensure_cron(site: dict) -> bool:
    """:return: True if the crontab was changed"""
    user = site["web_user"]
    current = ssh_output(site, f"crontab -u {user} -l 2>/dev/null")
    text, changed = add_cron_entry(current, scheduler_entry(site))
    if not changed:
        log("Scheduler cron entry already installed")
        return False
    encoded = base64.b64encode(text.encode()).decode()
    ssh(site, f"echo '{encoded}' | base64 -d | crontab -u {user} -")
    log(f"Scheduler cron entry installed for {user}")
    return True


STORAGE_GITIGNORES = {
    "storage/app": "*\\n!public/\\n!.gitignore\\n",
    "storage/app/public": "*\\n!.gitignore\\n",
    "storage/framework/cache": "*\\n!data/\\n!.gitignore\\n",
    "storage/framework/cache/data": "*\\n!.gitignore\\n",
    "storage/framework/sessions": "*\\n!.gitignore\\n",
    "storage/framework/views": "*\\n!.gitignore\\n",
    "storage/logs": "*\\n!.gitignore\\n",
}


def scaffold_laravel(site: dict, safe: bool = False) -> list[str]:
    """Create missing Laravel directories. Existing files are never overwritten.

    :return: directories created
    """
    root, user = site["web_root"], site["web_user"]
    lines = [f"cd {root} || exit 1"]
    for d in LARAVEL_DIRS:
        lines.append(f'if [ ! -d "{d}" ]; then mkdir -p "{d}" && echo "{d}"; fi')
    for d, content in STORAGE_GITIGNORES.items():
        lines.append(f'if [ -d "{d}" ] && [ ! -f "{d}/.gitignore" ]; then printf "{content}" > "{d}/.gitignore"; fi')
    lines.append(f"chown -R {user}:{user} storage bootstrap")
    out = ssh_script(site, "\n".join(lines), check=not safe)
    created = [line for line in out.splitlines() if line.strip()]
    if created:
        log(f"Created {len(created)} director{'y' if len(created) == 1 else 'ies'}")
    else:
        log("Laravel directory structure complete")
    return created


def final_checks(site: dict) -> bool:
    version = artisan(site, "--version")
    if version.failed:
        warn("artisan --version failed")
    else:
        log(version.stdout.strip())
    good = True
    for url in ("http://localhost/", f"http://{site['domain']}/"):
        code = remote_http_status(site, url)
        if classify_status(code) == "ok":
            log(f"{url} -> {code}")
        else:
            warn(f"{url} -> {code or 'no response'}")
            good = False
    return good


BOOTSTRAP_APP_PHP = dedent("""
    <?php

    $app = new Illuminate\\Foundation\\Application(
        $_ENV['APP_BASE_PATH'] ?? dirname(__DIR__)
    );

    $app->singleton(
        Illuminate\\Contracts\\Http\\Kernel::class,
        App\\Http\\Kernel::class
    );

    $app->singleton(
        Illuminate\\Contracts\\Console\\Kernel::class,
        App\\Console\\Kernel::class
    );

    $app->singleton(
        Illuminate\\Contracts\\Debug\\ExceptionHandler::class,
        App\\Exceptions\\Handler::class
    );

    return $app;
""").lstrip()

CONSOLE_KERNEL_PHP = dedent("""
    <?php

    namespace App\\Console;

    use Illuminate\\Console\\Scheduling\\Schedule;
    use Illuminate\\Foundation\\Console\\Kernel as ConsoleKernel;

    class Kernel extends ConsoleKernel
    {
        protected function schedule(Schedule $schedule): void
        {
            //
        }

        protected function commands(): void
        {
            $this->load(__DIR__.'/Commands');

            if (file_exists(base_path('routes/console.php'))) {
                require base_path('routes/console.php');
            }
        }
    }
""").lstrip()

EXCEPTION_HANDLER_PHP = dedent("""
    <?php

    namespace App\\Exceptions;

    use Illuminate\\Foundation\\Exceptions\\Handler as ExceptionHandler;
    use Throwable;

    class Handler extends ExceptionHandler
    {
        protected $dontFlash = [
            'current_password',
            'password',
            'password_confirmation',
        ];

        public function register(): void
        {
            $this->reportable(function (Throwable $e) {
                //
            });
        }
    }
""").lstrip()

HTTP_KERNEL_PHP = dedent("""
    <?php

    namespace App\\Http;

    use Illuminate\\Foundation\\Http\\Kernel as HttpKernel;

    class Kernel extends HttpKernel
    {
        protected $middleware = [
            \\Illuminate\\Http\\Middleware\\TrustProxies::class,
            \\Illuminate\\Http\\Middleware\\HandleCors::class,
            \\Illuminate\\Foundation\\Http\\Middleware\\PreventRequestsDuringMaintenance::class,
            \\Illuminate\\Foundation\\Http\\Middleware\\ValidatePostSize::class,
            \\Illuminate\\Foundation\\Http\\Middleware\\TrimStrings::class,
            \\Illuminate\\Foundation\\Http\\Middleware\\ConvertEmptyStringsToNull::class,
        ];

        protected $middlewareGroups = [
            'web' => [
                \\Illuminate\\Cookie\\Middleware\\EncryptCookies::class,
                \\Illuminate\\Cookie\\Middleware\\AddQueuedCookiesToResponse::class,
                \\Illuminate\\Session\\Middleware\\StartSession::class,
                \\Illuminate\\View\\Middleware\\ShareErrorsFromSession::class,
                \\Illuminate\\Foundation\\Http\\Middleware\\VerifyCsrfToken::class,
                \\Illuminate\\Routing\\Middleware\\SubstituteBindings::class,
            ],

            'api' => [
                \\Illuminate\\Routing\\Middleware\\SubstituteBindings::class,
            ],
        ];

        protected $middlewareAliases = [
            'auth' => \\Illuminate\\Auth\\Middleware\\Authenticate::class,
            'auth.basic' => \\Illuminate\\Auth\\Middleware\\AuthenticateWithBasicAuth::class,
            'cache.headers' => \\Illuminate\\Http\\Middleware\\SetCacheHeaders::class,
            'can' => \\Illuminate\\Auth\\Middleware\\Authorize::class,
            'password.confirm' => \\Illuminate\\Auth\\Middleware\\RequirePassword::class,
            'signed' => \\Illuminate\\Routing\\Middleware\\ValidateSignature::class,
            'throttle' => \\Illuminate\\Routing\\Middleware\\ThrottleRequests::class,
            'verified' => \\Illuminate\\Auth\\Middleware\\EnsureEmailIsVerified::class,
        ];
    }
""").lstrip()

APP_SERVICE_PROVIDER_PHP = dedent("""
    <?php

    namespace App\\Providers;

    use Illuminate\\Support\\ServiceProvider;

    class AppServiceProvider extends ServiceProvider
    {
        public function register(): void
        {
            //
        }

        public function boot(): void
        {
            //
        }
    }
""").lstrip()

ROUTE_SERVICE_PROVIDER_PHP = dedent("""
    <?php

    namespace App\\Providers;

    use Illuminate\\Foundation\\Support\\Providers\\RouteServiceProvider as ServiceProvider;
    use Illuminate\\Support\\Facades\\Route;

    class RouteServiceProvider extends ServiceProvider
    {
        public const HOME = '/home';

        public function boot(): void
        {
            $this->routes(function () {
                if (file_exists(base_path('routes/api.php'))) {
                    Route::middleware('api')->prefix('api')->group(base_path('routes/api.php'));
                }
                Route::middleware('web')->group(base_path('routes/web.php'));
            });
        }
    }
""").lstrip()

CONFIG_APP_PHP = dedent("""
    <?php

    use Illuminate\\Support\\Facades\\Facade;
    use Illuminate\\Support\\ServiceProvider;

    return [
        'name' => env('APP_NAME', 'Laravel'),
        'env' => env('APP_ENV', 'production'),
        'debug' => (bool) env('APP_DEBUG', false),
        'url' => env('APP_URL', 'http://localhost'),
        'asset_url' => env('ASSET_URL'),
        'timezone' => 'UTC',
        'locale' => 'en',
        'fallback_locale' => 'en',
        'faker_locale' => 'en_US',
        'key' => env('APP_KEY'),
        'cipher' => 'AES-256-CBC',
        'maintenance' => [
            'driver' => 'file',
        ],
        'providers' => ServiceProvider::defaultProviders()->merge([
            App\\Providers\\AppServiceProvider::class,
            App\\Providers\\RouteServiceProvider::class,
        ])->toArray(),
        'aliases' => Facade::defaultAliases()->toArray(),
    ];
""").lstrip()

USER_MODEL_PHP = dedent("""
    <?php

    namespace App\\Models;

    use Illuminate\\Database\\Eloquent\\Factories\\HasFactory;
    use Illuminate\\Foundation\\Auth\\User as Authenticatable;
    use Illuminate\\Notifications\\Notifiable;

    class User extends Authenticatable
    {
        use HasFactory, Notifiable;

        protected $fillable = [
            'name',
            'email',
            'password',
        ];

        protected $hidden = [
            'password',
            'remember_token',
        ];

        protected $casts = [
            'email_verified_at' => 'datetime',
            'password' => 'hashed',
        ];
    }
""").lstrip()

CONFIG_AUTH_PHP = dedent("""
    <?php

    return [
        'defaults' => [
            'guard' => 'web',
            'passwords' => 'users',
        ],

        'guards' => [
            'web' => [
                'driver' => 'session',
                'provider' => 'users',
            ],
        ],

        'providers' => [
            'users' => [
                'driver' => 'eloquent',
                'model' => App\\Models\\User::class,
            ],
        ],

        'passwords' => [
            'users' => [
                'provider' => 'users',
                'table' => 'password_reset_tokens',
                'expire' => 60,
                'throttle' => 60,
            ],
        ],

        'password_timeout' => 10800,
    ];
""").lstrip()

CONFIG_CACHE_PHP = dedent("""
    <?php

    return [
        'default' => env('CACHE_DRIVER', 'file'),

        'stores' => [
            'array' => [
                'driver' => 'array',
                'serialize' => false,
            ],

            'file' => [
                'driver' => 'file',
                'path' => storage_path('framework/cache/data'),
            ],
        ],

        'prefix' => env('CACHE_PREFIX', 'laravel_cache_'),
    ];
""").lstrip()

LARAVEL_CORE_FILES = {
    "bootstrap/app.php": BOOTSTRAP_APP_PHP,
    "app/Console/Kernel.php": CONSOLE_KERNEL_PHP,
    "app/Exceptions/Handler.php": EXCEPTION_HANDLER_PHP,
}

# Written only when missing, even with --overwrite.
LARAVEL_SUPPORT_FILES = {
    "app/Http/Kernel.php": HTTP_KERNEL_PHP,
    "app/Providers/AppServiceProvider.php": APP_SERVICE_PROVIDER_PHP,
    "app/Providers/RouteServiceProvider.php": ROUTE_SERVICE_PROVIDER_PHP,
    "config/app.php": CONFIG_APP_PHP,
    "app/Models/User.php": USER_MODEL_PHP,
    "config/auth.php": CONFIG_AUTH_PHP,
    "config/cache.php": CONFIG_CACHE_PHP,
}

BOOTSTRAP_CHECK_PHP = (
    "require 'vendor/autoload.php'; "
    "$app = require 'bootstrap/app.php'; "
    "$app->make(Illuminate\\Contracts\\Console\\Kernel::class)->bootstrap(); "
    "echo 'Laravel '.$app->version();"
)


def missing_php_extensions(modules: set[str]) -> list[str]:
    loaded = {m.strip().lower() for m in modules}
    return [ext for ext in REQUIRED_PHP_EXTENSIONS if ext not in loaded]


def parse_df_gb(output: str) -> int | None:
    """Last number of ``df -BG --output=avail`` output (``  42G``)."""
    numbers = re.findall(r"(\d+)G", output)
    return int(numbers[-1]) if numbers else None


def memory_to_mb(limit: str) -> float:
    """PHP ``memory_limit`` (``256M``, ``1G``, ``-1``) in megabytes."""
    limit = limit.strip().upper()
    if limit == "-1":
        return float("inf")
    match = re.fullmatch(r"(\d+)([KMG]?)", limit)
    if not match:
        return 0
    value, unit = int(match.group(1)), match.group(2)
    return {"K": value / 1024, "M": value, "G": value * 1024}.get(unit, value / (1024 * 1024))


def count_ran_migrations(output: str) -> int:
    return sum(1 for line in output.splitlines() if re.search(r"\bRan\b|\|\s*Yes\s*\|", line))


def load_test_script(urls: list[str], rounds: int) -> str:
    """Fire ``rounds`` batches of concurrent requests and wait for all of them."""
    lines = [f"for i in $(seq 1 {rounds}); do"]
    lines += [f"    curl -s -o /dev/null -m 10 {shlex.quote(url)} &" for url in urls]
    lines += ["done", "wait"]
    return "\n".join(lines)


def laravel_log(site: dict) -> str:
    return f"{site['web_root']}/storage/logs/laravel.log"


def write_laravel_file(site: dict, rel: str, content: str, safe: bool = False) -> bool:
    path = f"{site['web_root']}/{rel}"
    parent = path.rsplit("/", 1)[0]
    result = run_on(site, f"mkdir -p {parent}")
    if result.failed:
        error(f"Cannot create {parent}: {escape(result.stderr.strip())}", fatal=not safe)
        return False
    if not ssh_write_file(site, path, content, safe=safe):
        return False
    log(f"Wrote {rel}")
    return True


def check_bootstrap(site: dict) -> Result:
    """Load the autoloader and boot the application as the web user."""
    return run_on(site, as_web_user(site, f"php -r {shlex.quote(BOOTSTRAP_CHECK_PHP)}"), timeout=120)


def generate_key(site: dict, safe: bool = False) -> bool:
    """``artisan key:generate``, or write a fresh key into .env when artisan cannot run."""
    if not artisan(site, "key:generate --force").failed and parse_env(read_env(site) or "").get("APP_KEY"):
        log("Application key generated")
        return True
    warn("artisan key:generate failed, writing APP_KEY directly")
    return write_env_updates(site, {"APP_KEY": generate_app_key()}, safe=safe)


def pre_deploy_report(site: dict, source: str | None = None, root_password: str | None = None) -> Report:
    report = Report("Pre-deploy check")
    root = site["web_root"]

    section("System")
    info(f"Host: {ssh_output(site, 'hostname')} ({ssh_output(site, 'uname -srm')})")
    info(f"OS: {ssh_output(site, '. /etc/os-release 2>/dev/null && echo $PRETTY_NAME') or 'unknown'}")
    memory = ssh_output(site, "free -h | awk '/Mem:/ {print $2}'")
    info(f"Memory: {memory or 'unknown'}")

    section("PHP")
    php_version = ssh_output(site, "php -r 'echo PHP_VERSION;' 2>/dev/null")
    report.check(
        f"PHP {php_version or 'not found'} (>= {REQUIRED_PHP_VERSION})",
        bool(php_version) and version_at_least(php_version, REQUIRED_PHP_VERSION),
        hint=f"install PHP {REQUIRED_PHP_VERSION}+ from the panel",
    )
    missing = missing_php_extensions(set(ssh_output(site, "php -m 2>/dev/null").splitlines()))
    prefix = f"php{site.get('php_version') or ''}"
    report.check(
        "Required PHP extensions" + (f" (missing: {', '.join(missing)})" if missing else ""),
        not missing,
        hint="apt install " + " ".join(f"{prefix}-{ext}" for ext in missing),
    )

    section("Tools")
    for tool, command in (("Composer", "composer --version"), ("Node.js", "node --version"), ("npm", "npm --version")):
        version = ssh_output(site, f"{command} 2>/dev/null")
        report.check(f"{tool} {version.splitlines()[0] if version else 'not found'}", bool(version))
    report.check("MySQL client", ssh_ok(site, "command -v mysql"))
    if root_password is not None:
        report.check("MySQL root login", not mysql_root(site, "SELECT 1;", root_password).failed)
    report.check("Nginx installed", ssh_ok(site, "command -v nginx"))

    section("Disk and web root")
    free_gb = parse_df_gb(ssh_output(site, "df -BG --output=avail / | tail -1"))
    report.check(
        f"Free disk space {free_gb if free_gb is not None else '?'}G (>= {DISK_MIN_GB}G)",
        free_gb is not None and free_gb >= DISK_MIN_GB,
    )
    parent = root.rsplit("/", 1)[0] or "/"
    report.check(
        f"Web root writable or creatable: {root}",
        ssh_ok(site, f"test -w {root} || (test ! -e {root} && test -w {parent})"),
    )

    if source:
        section("Source")
        for name in REQUIRED_SOURCE_FILES:
            report.check(f"Source has {name}", Path(source, name).exists())

    section("Advisory")
    report.check("Nginx running", service_active(site, "nginx"), critical=False)
    report.check(
        "Nginx enabled at boot",
        ssh_output(site, "systemctl is-enabled nginx 2>/dev/null") == "enabled",
        critical=False,
    )
    report.check(
        "Redis available",
        ssh_ok(site, "command -v redis-server || command -v redis-cli"),
        critical=False,
    )
    days = cert_days_left(site)
    report.check(
        f"SSL certificate ({days if days is not None else 'none'} days left)",
        days is not None and days >= SSL_WARN_DAYS,
        critical=False,
        hint=f"renew when under {SSL_WARN_DAYS} days",
    )
    ufw = ssh_output(site, "ufw status 2>/dev/null")
    report.check(
        "UFW active with 22, 80, 443 open",
        "Status: active" in ufw and all(port in ufw for port in ("22", "80", "443")),
        critical=False,
    )
    legacy = ssh_output(site, f"cd {root} 2>/dev/null && ls -d wp-config.php wp-content index.html 2>/dev/null")
    report.check(
        "No CMS leftovers in web root",
        not legacy,
        critical=False,
        hint=f"found {' '.join(legacy.split())}, removed during deploy",
    )
    return report


def post_deploy_report(site: dict) -> Report:
    report = Report("Post-deploy verify")
    root, user, domain = site["web_root"], site["web_user"], site["domain"]

    section("Services")
    report.check("Nginx running", service_active(site, "nginx"))
    fpm = php_fpm_service(site.get("php_version"))
    report.check(f"{fpm} running", service_active(site, fpm))

    section("Website")
    code = remote_http_status(site, f"http://{domain}/")
    report.check(f"http://{domain}/ -> {code or 'no response'}", classify_status(code) == "ok")
    code = remote_http_status(site, f"https://{domain}/")
    report.check(f"https://{domain}/ -> {code or 'no response'}", classify_status(code) == "ok", critical=False)
    code = remote_http_status(site, "http://localhost/")
    report.check(
        f"http://localhost/ -> {code or 'no response'}",
        classify_status(code) == "ok",
        hint=f"deploy-laravel nginx bind {site.get('name', '')}".strip(),
    )

    section("Laravel")
    report.check("artisan present", remote_exists(site, f"{root}/artisan", "f"))
    version = artisan(site, "--version")
    report.check(version.stdout.strip() or "artisan --version", not version.failed)
    env = parse_env(read_env(site) or "")
    report.check("APP_ENV=production", env.get("APP_ENV") == "production")
    report.check("APP_DEBUG=false", env.get("APP_DEBUG", "").lower() == "false")
    report.check("APP_KEY set", bool(env.get("APP_KEY")))
    migrations = artisan(site, "migrate:status")
    ran = count_ran_migrations(migrations.stdout)
    report.check(f"Migrations ran ({ran})", not migrations.failed and ran > 0, critical=False)

    section("Permissions")
    for d in ("storage", "bootstrap/cache"):
        owner = ssh_output(site, f"stat -c %U {root}/{d} 2>/dev/null")
        report.check(f"{d} owned by {user}", owner == user)
        report.check(f"{d} writable by {user}", ssh_ok(site, as_web_user(site, f"test -w {d}")))

    section("Optimization")
    for name in ("config.php", "routes-v7.php", "packages.php"):
        report.check(f"bootstrap/cache/{name}", remote_exists(site, f"{root}/bootstrap/cache/{name}", "f"), critical=False)
    report.check("public/storage link", remote_exists(site, f"{root}/public/storage", "L"), critical=False)
    report.check("vendor/autoload.php", remote_exists(site, f"{root}/vendor/autoload.php", "f"))
    report.check(
        "Optimized class map",
        ssh_ok(site, f"test -s {root}/vendor/composer/autoload_classmap.php"),
        critical=False,
    )
    report.check(
        "Built assets",
        ssh_ok(site, f"test -f {root}/public/build/manifest.json || test -f {root}/public/mix-manifest.json"),
        critical=False,
    )

    section("Logs, cron, TLS")
    errors = ssh_output(site, f"grep -cE '{LOG_ERROR_PATTERN}' {laravel_log(site)} 2>/dev/null")
    error_count = int(errors) if errors.isdigit() else 0
    report.check("No errors in laravel.log", error_count == 0, critical=False, hint=f"{error_count} error lines")
    crontab = ssh_output(site, f"crontab -u {user} -l 2>/dev/null")
    report.check("Scheduler cron entry", scheduler_entry(site) in crontab, critical=False)
    days = cert_days_left(site)
    report.check(
        f"SSL certificate ({days if days is not None else 'none'} days left)",
        days is not None and days >= SSL_WARN_DAYS,
        critical=False,
    )
    headers = fetch_headers(f"https://{domain}/") or fetch_headers(f"http://{domain}/")
    for header in SECURITY_HEADERS:
        report.check(f"Header {header}", header in headers, critical=False)
    return report


def environment_report(site: dict) -> Report:
    """Read-only diagnostics, safe to run on a live FastPanel host."""
    report = Report("Environment diagnostics")
    root, user = site["web_root"], site["web_user"]

    section("System")
    info(f"Host: {ssh_output(site, 'hostname')} ({ssh_output(site, 'uname -srm')})")
    info(f"Uptime: {ssh_output(site, 'uptime -p 2>/dev/null || uptime')}")
    log_detail("free -m", ssh_output(site, "free -m"))

    section("FastPanel")
    report.check(
        "FastPanel installed",
        detect_panel(site) == "fastpanel",
        critical=site.get("panel") == "fastpanel",
    )
    report.check(
        "FastPanel service running",
        service_active(site, "fastpanel2") or service_active(site, "fastpanel"),
        critical=False,
    )
    report.check(
        f"FastPanel UI listening on :{FASTPANEL_UI_PORT}",
        bool(port_bindings(site, FASTPANEL_UI_PORT)),
        critical=False,
    )

    section("Nginx")
    report.check("Nginx installed", ssh_ok(site, "command -v nginx"))
    report.check("Nginx running", service_active(site, "nginx"))
    result = run_on(site, "nginx -t")
    log_detail("nginx -t", result.stderr)
    report.check("Nginx config valid", not result.failed, hint="see nginx -t output in the log")

    section("Site")
    if site.get("panel") == "fastpanel":
        report.check(f"Domain dir /var/www/{user}", remote_exists(site, f"/var/www/{user}", "d"))
    report.check(f"Web root {root}", remote_exists(site, root, "d"))
    report.check(f"Web user {user}", ssh_ok(site, f"id -u {user}"))

    section("PHP")
    php_version = ssh_output(site, "php -r 'echo PHP_VERSION;' 2>/dev/null")
    report.check(f"PHP {php_version or 'not found'}", bool(php_version))
    fpm = php_fpm_service(site.get("php_version"))
    report.check(f"{fpm} running", service_active(site, fpm))
    missing = missing_php_extensions(set(ssh_output(site, "php -m 2>/dev/null").splitlines()))
    report.check(
        "Required PHP extensions" + (f" (missing: {', '.join(missing)})" if missing else ""),
        not missing,
    )
    limit = ssh_output(site, "php -r 'echo ini_get(\"memory_limit\");' 2>/dev/null")
    report.check(f"PHP memory_limit {limit or '?'} (>= 128M)", memory_to_mb(limit) >= 128, critical=False)

    section("MySQL")
    report.check(
        "MySQL/MariaDB running",
        service_active(site, "mysql") or service_active(site, "mariadb"),
    )

    section("Laravel")
    for name in ("artisan", "composer.json", "vendor/autoload.php", ".env"):
        report.check(name, remote_exists(site, f"{root}/{name}", "f"))
    report.check("APP_KEY set", bool(parse_env(read_env(site) or "").get("APP_KEY")))
    for d in ("storage", "bootstrap/cache"):
        report.check(f"{d} writable by {user}", ssh_ok(site, as_web_user(site, f"test -w {d}")))

    section("Bindings")
    conf = ssh_read_file(site, site["nginx_conf"]) or ""
    directives = find_listen_directives(conf)
    for directive in directives:
        info(f"listen {directive}")
    report.check(
        "Site answers on 127.0.0.1 or all addresses",
        any(d.split()[0] in WILDCARD_LISTENS or d.startswith("127.0.0.1:") for d in directives),
        critical=False,
        hint=f"deploy-laravel nginx bind {site.get('name', '')}".strip(),
    )
    bindings = port_bindings(site, 80)
    log_detail("port 80 bindings", "\n".join(bindings))
    report.check("Something listens on port 80", bool(bindings))

    section("Logs")
    recent = ssh_output(site, f"tail -n 200 {laravel_log(site)} 2>/dev/null | grep -E '{LOG_ERROR_PATTERN}'")
    log_detail("recent laravel.log errors", recent)
    count = len(recent.splitlines())
    report.check("No recent errors in laravel.log", count == 0, critical=False, hint=f"{count} in last 200 lines")
    return report


SOURCE_CORE_FILES = [
    "artisan",
    "composer.json",
    "bootstrap/app.php",
    "app/Http/Kernel.php",
    "app/Console/Kernel.php",
    "app/Exceptions/Handler.php",
    "config/app.php",
    "config/database.php",
    "public/index.php",
    "routes/web.php",
]
SOURCE_OPTIONAL_FILES = ["config/auth.php", "config/cache.php", "routes/api.php", "routes/console.php"]


def missing_env_keys(env_text: str, example_text: str) -> list[str]:
    """Keys defined in .env.example but absent from .env, in example order."""
    env = parse_env(env_text)
    return [key for key in parse_env(example_text) if key not in env]


def composer_packages(composer: dict, lock: dict | None = None) -> list[str]:
    """Package names from ``require`` and the lock file, without php and extensions."""
    names = {name for name in composer.get("require", {}) if "/" in name}
    if lock:
        names.update(p["name"] for p in lock.get("packages", []) if "name" in p)
    return sorted(names)


def source_report(site: dict) -> Report:
    """Audit the deployed application tree: files, dependencies, .env, database, middleware."""
    report = Report("Source diagnostic")
    root = site["web_root"]

    section("Core files")
    for rel in SOURCE_CORE_FILES + SOURCE_OPTIONAL_FILES:
        path = f"{root}/{rel}"
        critical = rel in SOURCE_CORE_FILES
        if not remote_exists(site, path, "f"):
            report.check(rel, False, critical=critical, hint="missing")
        elif rel.endswith(".php"):
            lint = run_on(site, f"php -l {path}")
            report.check(rel, not lint.failed, critical=critical, hint=(lint.stdout or lint.stderr).strip()[:200])
        else:
            report.check(rel, True)

    section("Composer")
    composer = None
    try:
        composer = json.loads(ssh_read_file(site, f"{root}/composer.json") or "")
    except json.JSONDecodeError:
        pass
    report.check("composer.json is valid JSON", composer is not None)
    composer = composer or {}
    constraint = composer.get("require", {}).get("laravel/framework")
    report.check(f"laravel/framework {constraint or 'not required'}", bool(constraint))
    lock = None
    lock_text = ssh_read_file(site, f"{root}/composer.lock")
    if lock_text is None:
        report.check("composer.lock present", False, critical=False, hint="run composer install")
    else:
        try:
            lock = json.loads(lock_text)
        except json.JSONDecodeError:
            pass
        report.check("composer.lock is valid JSON", lock is not None)
        report.check(
            "composer.lock newer than composer.json",
            ssh_ok(site, f"test {root}/composer.lock -nt {root}/composer.json"),
            critical=False,
            hint="run composer update",
        )
    report.check("vendor/autoload.php", remote_exists(site, f"{root}/vendor/autoload.php", "f"))
    packages = composer_packages(composer, lock)
    if packages:
        script = f"cd {root} && for p in {' '.join(packages)}; do [ -d vendor/$p ] || echo $p; done"
        missing = ssh_output(site, script).split()
        report.check(
            f"{len(packages) - len(missing)}/{len(packages)} packages installed in vendor",
            not missing,
            hint=", ".join(missing[:10]),
        )
    autoload = run_on(site, as_web_user(site, "php -r \"require 'vendor/autoload.php';\""))
    report.check("Autoloader loads", not autoload.failed, hint=autoload.stderr.strip()[:200])

    section("Node")
    if remote_exists(site, f"{root}/package.json", "f"):
        report.check("node_modules present", remote_exists(site, f"{root}/node_modules", "d"), critical=False)
        report.check(
            "Built assets",
            ssh_ok(site, f"test -f {root}/public/build/manifest.json || test -f {root}/public/mix-manifest.json"),
            critical=False,
        )
    else:
        info("No package.json")

    section("Environment")
    env_text = read_env(site)
    report.check(".env present", env_text is not None)
    env = parse_env(env_text or "")
    example = ssh_read_file(site, f"{root}/.env.example")
    if example is not None:
        missing_keys = missing_env_keys(env_text or "", example)
        report.check(
            "All .env.example keys set in .env",
            not missing_keys,
            critical=False,
            hint=", ".join(missing_keys[:10]),
        )
    report.check("APP_KEY is base64 encoded", env.get("APP_KEY", "").startswith("base64:"))
    if env.get("APP_ENV") == "production":
        report.check("APP_DEBUG off in production", env.get("APP_DEBUG", "").lower() == "false", critical=False)

    section("Database")
    if env.get("DB_DATABASE") and env.get("DB_USERNAME"):
        cmd = (
            f"{_mysql_pwd(env.get('DB_PASSWORD', ''))}mysql -u{shlex.quote(env['DB_USERNAME'])} "
            f"-h {shlex.quote(env.get('DB_HOST') or '127.0.0.1')} {shlex.quote(env['DB_DATABASE'])} -e 'SELECT 1'"
        )
        result = run_on(site, cmd, timeout=30)
        report.check(
            f"Connect to {env['DB_DATABASE']} as {env['DB_USERNAME']}",
            not result.failed,
            hint=result.stderr.strip()[:200],
        )
    else:
        report.check("Database settings in .env", False, critical=False, hint="DB_DATABASE/DB_USERNAME empty")
    count = ssh_output(site, f"ls {root}/database/migrations/*.php 2>/dev/null | wc -l")
    migrations = int(count) if count.isdigit() else 0
    report.check(f"Migration files ({migrations})", migrations > 0, critical=False)

    section("Middleware")
    kernel = ssh_read_file(site, f"{root}/app/Http/Kernel.php") or ""
    report.check("CSRF middleware registered", "VerifyCsrfToken" in kernel, critical=False)
    report.check("Auth middleware registered", "Authenticate" in kernel, critical=False)
    api_routes = ssh_read_file(site, f"{root}/routes/api.php")
    if api_routes is not None:
        report.check("API rate limiting", "throttle" in api_routes or "throttle" in kernel, critical=False)
    return report


def auto_fix(site: dict) -> list[str]:
    """Repair the usual causes of an HTTP 500. Each step runs even if an earlier one failed.

    :return: descriptions of the steps that failed
    """
    failed = []
    root = site["web_root"]

    def attempt(description: str, passed: bool):
        if passed:
            ok(description)
        else:
            fail(description)
            failed.append(description)

    attempt(".env present", remote_exists(site, env_path(site), "f") or ensure_env(site, safe=True))

    if not parse_env(read_env(site) or "").get("APP_KEY"):
        generate_key(site, safe=True)
    attempt("APP_KEY set", bool(parse_env(read_env(site) or "").get("APP_KEY")))

    scaffold_laravel(site, safe=True)
    attempt("Permissions", set_permissions(site, safe=True))

    if not remote_exists(site, f"{root}/vendor/autoload.php", "f"):
        attempt("Composer dependencies", install_composer(site, safe=True))

    cleared = [not artisan(site, args).failed for args in ("config:clear", "route:clear", "view:clear", "cache:clear")]
    attempt("Caches cleared", all(cleared))
    attempt("Services restarted", restart_services(site, safe=True))
    return failed


def wait_for_http(site: dict, url: str) -> int:
    code = 0
    for i in range(HTTP_VERIFY_RETRIES):
        code = remote_http_status(site, url)
        if classify_status(code) == "ok":
            return code
        if i < HTTP_VERIFY_RETRIES - 1:
            time.sleep(HTTP_VERIFY_DELAY)
    return code


@site_app.command(name="init")
def init_site(
    name: str,
    *,
    domain: str,
    host: str | None = None,
    ssh_user: str | None = None,
    panel: PanelName | None = None,
    web_root: str | None = None,
    web_user: str | None = None,
    php_version: str | None = None,
    external_ip: str | None = None,
    db_name: str | None = None,
    db_user: str | None = None,
    backup_dir: str | None = None,
):
    """Create or update <name>.site.json, probing the host for panel, web user and PHP.

    Re-running keeps earlier values unless a flag overrides them.

    :param name: Site name (file <name>.site.json)
    :param domain: Site domain, e.g. example.com
    :param host: SSH host or IP; "local" switches back to managing this machine
    :param ssh_user: SSH user for connection (default: root)
    :param panel: fastpanel or plain (detected when omitted)
    :param web_root: Laravel project root (default: FastPanel convention)
    :param web_user: Owner of the site files (detected when omitted)
    :param php_version: PHP version, e.g. 8.2 (detected when omitted)
    :param external_ip: IP nginx binds the site to (detected when omitted)
    :param db_name: Database name
    :param db_user: Database user
    :param backup_dir: Where backups are written on the host
    """
    path = site_path(name)
    existing = json.loads(path.read_text()) if path.exists() else {}
    local = host in LOCAL_HOSTS
    probe = {
        "host": None if local else host or existing.get("host"),
        "ssh_user": ssh_user or existing.get("ssh_user") or "root",
    }
    log(f"Probing {probe['host'] or 'local machine'}...")

    panel = panel or detect_panel(probe)
    user = detect_web_user(probe, domain, web_user or existing.get("web_user"))
    data = site_defaults(domain, panel, user)
    if existing.get("domain") == domain and existing.get("panel", panel) == panel:
        data.update(existing)
    overrides = {
        "host": host,
        "ssh_user": ssh_user,
        "web_root": web_root,
        "web_user": web_user,
        "php_version": php_version,
        "external_ip": external_ip,
        "db_name": db_name,
        "db_user": db_user,
        "backup_dir": backup_dir,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    if local:
        data["host"] = None
    data.update({"name": name, "domain": domain, "panel": panel})

    if not data.get("php_version"):
        data["php_version"] = detect_php_version(data)
    if not data.get("external_ip"):
        data["external_ip"] = detect_external_ip(data)

    save_site(name, data)
    log(f"Panel: {panel}, web user: {data['web_user']}, PHP: {data['php_version'] or 'unknown'}")
    log(f"Saved {path}")


@site_app.command(name="show")
def show_site(name: str):
    """Print the site descriptor.

    :param name: Site name
    """
    print_json(data=load_site(name))


@site_app.command(name="verify")
def verify_site(name: str):
    """Verify the site: SSH, root, web user, web root, DNS, HTTP.

    :param name: Site name
    """
    site = load_site(name)
    domain = site["domain"]

    print(f"Verifying {name} ({site.get('host') or 'localhost'})...")
    print("-" * 40)
    issues = []

    try:
        uptime = ssh_output(site, "uptime")
        print(f"[OK] SSH: {uptime}")
    except Exception as e:
        print(f"[FAIL] SSH: {escape(str(e))}")
        print("Issues found (1):\n  - SSH connection failed")
        sys.exit(1)

    if ssh_output(site, "id -u") == "0":
        print("[OK] Root: yes")
    else:
        print("[FAIL] Root: commands need root on the host")
        issues.append("Not root")

    if ssh_ok(site, f"id -u {site['web_user']}"):
        print(f"[OK] Web user: {site['web_user']}")
    else:
        print(f"[FAIL] Web user: {site['web_user']} does not exist")
        issues.append(f"Web user {site['web_user']} missing")

    if remote_exists(site, site["web_root"], "d"):
        print(f"[OK] Web root: {site['web_root']}")
    else:
        print(f"[FAIL] Web root: {site['web_root']} not found")
        issues.append("Web root missing")

    expected_ip = site.get("external_ip")
    dns_ip = resolve_dns_a(domain)
    if dns_ip and dns_ip == expected_ip:
        print(f"[OK] DNS: {domain} -> {dns_ip}")
    elif dns_ip:
        print(f"[FAIL] DNS: {domain} -> {dns_ip} (expected {expected_ip})")
        issues.append(f"DNS mismatch: {dns_ip} != {expected_ip}")
    else:
        print(f"[FAIL] DNS: {domain} -> no A record found")
        issues.append("DNS check failed")

    status_code, response_line = check_http_status(f"http://{domain}")
    if classify_status(status_code) == "ok":
        print(f"[OK] HTTP: {response_line}")
    elif status_code:
        print(f"[WARN] HTTP: {response_line}")
    else:
        print(f"[FAIL] HTTP: {escape(response_line)}")
        issues.append("HTTP not responding")

    print("-" * 40)
    if issues:
        print(f"Issues found ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)
    print("All checks passed!")


@check_app.command(name="pre")
def check_pre(
    name: str,
    *,
    source: str | None = None,
    test_mysql: bool = False,
    mysql_password: str | None = None,
):
    """Check the host is ready for a deploy. Exits 1 when a critical check fails.

    :param name: Site name
    :param source: Local Laravel source to check for required files
    :param test_mysql: Also try a MySQL root login
    :param mysql_password: MySQL root password (default: $MYSQL_ROOT_PASSWORD or prompt)
    """
    site = load_site(name)
    start_log("pre_deploy_check")
    root_password = mysql_root_password(mysql_password) if test_mysql else None
    if not pre_deploy_report(site, source, root_password).summary():
        sys.exit(1)


@check_app.command(name="post")
def check_post(name: str):
    """Verify a deployed site. Exits 1 when a critical check fails.

    :param name: Site name
    """
    site = load_site(name)
    start_log("post_deploy_verify")
    if not post_deploy_report(site).summary():
        sys.exit(1)


@check_app.command(name="env")
def check_env(name: str):
    """Read-only environment diagnostics with a health score.

    :param name: Site name
    """
    site = load_site(name)
    start_log("environment_diagnosis")
    if not environment_report(site).summary():
        sys.exit(1)


@check_app.command(name="source")
def check_source(name: str):
    """Audit the deployed source: core files, Composer and npm dependencies, .env, database.

    :param name: Site name
    """
    site = load_site(name)
    start_log("source_diagnostic")
    if not source_report(site).summary():
        sys.exit(1)


@check_app.command(name="http")
def check_http(
    name: str,
    *,
    requests: int = 5,
    window: int = 5,
    page: list[str] | None = None,
    api: list[str] | None = None,
):
    """Deep analysis of HTTP 500 errors: URL matrix, load with log window, artisan, config.

    :param name: Site name
    :param requests: Rounds of concurrent requests fired while watching laravel.log
    :param window: Seconds to wait for log lines after the load
    :param page: Extra path to probe (repeatable), e.g. --page /login
    :param api: POST probe as PATH=FORMDATA (repeatable), e.g. --api "/api/calc=a=1&b=2"
    """
    site = load_site(name)
    start_log("deep_500_analysis")
    root = site["web_root"]

    section("Step 1: URL matrix")
    bases = ["http://localhost", "http://127.0.0.1"]
    if site.get("external_ip"):
        bases.append(f"http://{site['external_ip']}")
    bases.append(f"http://{site['domain']}")
    pages = PROBE_PAGES + list(page or [])
    codes = {}
    for base in bases:
        for path in pages:
            url = base + path
            probe = remote_http_probe(site, url)
            line = f"{url} -> {probe['code'] or 'no response'} ({probe['time']:.2f}s, {probe['size']} bytes)"
            if classify_status(probe["code"]) == "ok":
                ok(line)
            else:
                fail(line)
            log_detail(f"body of {url}", probe["body"])
            codes[url] = probe["code"]
    successes = sum(1 for code in codes.values() if classify_status(code) == "ok")
    server_errors = sum(1 for code in codes.values() if classify_status(code) == "server_error")
    info(f"{successes}/{len(codes)} OK, {server_errors} server error(s)")

    section("Step 2: Load with log window")
    log_path = laravel_log(site)
    before = ssh_output(site, f"wc -l < {log_path} 2>/dev/null")
    start = int(before) if before.isdigit() else 0
    ssh_script(site, load_test_script(list(codes), requests), timeout=15 * requests + 30, check=False)
    time.sleep(window)
    new_lines = ssh_output(site, f"tail -n +{start + 1} {log_path} 2>/dev/null").splitlines()
    new_errors = [line for line in new_lines if re.search(LOG_ERROR_PATTERN, line)]
    log_detail("new laravel.log lines", "\n".join(new_lines))
    if new_errors:
        fail(f"{len(new_lines)} new log line(s), {len(new_errors)} error(s) during load")
        for line in new_errors[:5]:
            print(f"    {escape(line[:200])}")
    else:
        ok(f"{len(new_lines)} new log line(s), no errors during load")

    if api:
        section("Step 3: API probes")
        for entry in api:
            path, _, data = entry.partition("=")
            url = f"http://localhost{path}"
            code = remote_http_status(site, url, data=data)
            if classify_status(code) == "ok":
                ok(f"POST {url} -> {code}")
            else:
                fail(f"POST {url} -> {code or 'no response'}")

    section("Step 4: Artisan internals")
    for args in ("route:list", "config:show app", "about"):
        result = artisan(site, args)
        log_detail(f"artisan {args}", result.stdout + result.stderr)
        if result.failed:
            last = (result.stderr.strip() or "failed").splitlines()[-1]
            fail(f"artisan {args}: {escape(last)}")
        else:
            ok(f"artisan {args}")

    section("Step 5: Server configuration")
    version = site.get("php_version") or "*"
    pool = ssh_output(
        site,
        f"grep -rhE '^(pm\\.max_children|request_terminate_timeout)' /etc/php/{version}/fpm/pool.d/ 2>/dev/null",
    )
    for line in pool.splitlines() or ["no pm.max_children / request_terminate_timeout found"]:
        info(f"PHP-FPM: {line.strip()}")
    for line in ssh_output(site, f"grep -h fastcgi_pass {site['nginx_conf']} 2>/dev/null").splitlines():
        info(f"nginx: {line.strip()}")

    section("Step 6: Resources")
    memory = ssh_output(site, "free -m | awk '/Mem:/ {print $3 \"/\" $2 \" MB\"}'")
    disk = ssh_output(site, f"df -h {root} | tail -1")
    limit = ssh_output(site, "php -r 'echo ini_get(\"memory_limit\");' 2>/dev/null")
    info(f"Memory used/total: {memory or 'unknown'}")
    info(f"Disk: {disk or 'unknown'}")
    info(f"PHP memory_limit: {limit or 'unknown'}")
    fpm_errors = ssh_output(site, f"tail -n 20 /var/log/php{site.get('php_version') or ''}-fpm.log 2>/dev/null")
    log_detail("php-fpm log", fpm_errors)

    section("Step 7: Recent Laravel errors")
    recent = ssh_output(site, f"grep -E '{LOG_ERROR_PATTERN}' {log_path} 2>/dev/null | tail -n 5")
    if recent:
        for line in recent.splitlines():
            print(f"  {escape(line[:300])}")
    else:
        ok("No errors in laravel.log")


def collect_db_settings(
    site: dict, db_name: str | None, db_user: str | None, db_password: str | None
) -> tuple[str, str, str]:
    db_name = db_name or ask("Database name", site["db_name"])
    db_user = db_user or ask("Database user", site["db_user"])
    if db_password is None:
        db_password = ask_secret("Database password (empty to generate)")
    if not db_password:
        db_password = secrets.token_urlsafe(18)
        log("Generated a random database password")
    return db_name, db_user, db_password


def run_migrations(site: dict, seed: bool = False, safe: bool = False) -> bool:
    result = artisan(site, "migrate --force", timeout=600)
    log_detail("artisan migrate", result.stdout + result.stderr)
    if result.failed:
        error(f"Migrations failed: {escape(result.stderr.strip()[-500:])}", fatal=not safe)
        return False
    log("Migrations applied")
    if seed:
        if artisan(site, "db:seed --force", timeout=600).failed:
            error("Seeding failed", fatal=not safe)
            return False
        log("Database seeded")
    return True


def configure_nginx(site: dict, https: bool = False):
    """Write the Laravel vhost to sites-available, enable it and reload. Plain panel only."""
    domain = site["domain"]
    if https and not remote_exists(site, f"/etc/letsencrypt/live/{domain}/fullchain.pem", "f"):
        error(f"No certificate in /etc/letsencrypt/live/{domain}, issue one before using --https")
    block = generate_laravel_server_block(
        f"{domain} www.{domain}",
        site["web_root"],
        php_fpm_socket(site),
        ssl_domain=domain if https else None,
    )
    available = f"/etc/nginx/sites-available/{domain}"
    ssh_write_file(site, available, block + "\n")
    ssh(site, f"ln -sf {available} /etc/nginx/sites-enabled/{domain} && rm -f /etc/nginx/sites-enabled/default")
    result = run_on(site, "nginx -t")
    if result.failed:
        error(f"nginx config test failed: {escape(result.stderr.strip())}")
    if not reload_nginx(site):
        error("nginx reload failed")
    log(f"nginx configured for {domain}")


def deploy_site(
    site: dict,
    source: str,
    *,
    yes: bool = False,
    force: bool = False,
    skip_db: bool = False,
    skip_assets: bool = False,
    seed: bool = False,
    db_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    mysql_password: str | None = None,
    https: bool = False,
):
    root = site["web_root"]
    target = site.get("host") or "localhost"

    section("Step 1: Root check")
    require_root(site)

    section("Step 2: Requirements")
    source = str(Path(source).resolve())
    if not Path(source, "artisan").exists():
        error(f"{source} does not look like a Laravel project (no artisan)")
    for tool in ("php", "composer", "nginx"):
        if not ssh_ok(site, f"command -v {tool}"):
            error(f"{tool} not found on {target}")
    log("php, composer and nginx present")

    section("Step 3: Confirm")
    if not confirm(f"Deploy {source} to {root} on {target}?", yes):
        warn("Deployment cancelled")
        return

    section("Step 4: Backup")
    create_backup(site)

    section("Step 5: Clean legacy files")
    clean_legacy_files(site)

    section("Step 6: Upload source")
    source_hash = upload_source(site, source, force=force)
    if source_hash is None:
        section("Rebuild caches")
        optimize_laravel(site)
        restart_services(site)
        log("Done! Source unchanged, caches rebuilt")
        return

    section("Step 7: Permissions")
    set_permissions(site)

    section("Step 8: Environment")
    ensure_env(site)
    write_env_updates(site, production_env_updates(site))
    log("Production values set in .env")

    section("Step 9: Composer")
    install_composer(site)
    if not parse_env(read_env(site) or "").get("APP_KEY"):
        generate_key(site)

    section("Step 10: Assets")
    if skip_assets:
        log("Skipped (--skip-assets)")
    else:
        install_assets(site)

    section("Step 11: Database")
    if skip_db:
        log("Skipped (--skip-db)")
    else:
        db_name, db_user, db_password = collect_db_settings(site, db_name, db_user, db_password)
        provision_database(site, db_name, db_user, db_password, mysql_root_password(mysql_password))
        run_migrations(site, seed=seed)

    section("Step 12: Nginx")
    if site.get("panel") == "plain":
        configure_nginx(site, https)
    else:
        info(f"FastPanel manages the vhost; if localhost is unreachable run: deploy-laravel nginx bind {site.get('name', '')}")

    section("Step 13: Laravel optimize")
    set_permissions(site)
    optimize_laravel(site)

    section("Step 14: Scheduler")
    ensure_cron(site)

    section("Step 15: Final checks")
    restart_services(site)
    final_checks(site)
    record_source_hash(site, source_hash)
    log(f"Done! https://{site['domain']}")


@deploy_app.command(name="full")
def deploy_full(
    name: str,
    source: str,
    *,
    yes: bool = False,
    force: bool = False,
    skip_db: bool = False,
    skip_assets: bool = False,
    seed: bool = False,
    db_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    mysql_password: str | None = None,
    https: bool = False,
):
    """Deploy a Laravel source tree: backup, upload, composer, assets, database, caches.

    :param name: Site name
    :param source: Local Laravel project directory
    :param yes: Skip the confirmation prompt
    :param force: Upload even if the source hash is unchanged
    :param skip_db: Skip database provisioning and migrations
    :param skip_assets: Skip npm install and build
    :param seed: Run db:seed after migrating
    :param db_name: Database name (prompted when omitted)
    :param db_user: Database user (prompted when omitted)
    :param db_password: Database password (prompted, or generated when empty)
    :param mysql_password: MySQL root password (default: $MYSQL_ROOT_PASSWORD or prompt)
    :param https: Plain panel only: write the HTTPS vhost (certificate must exist)
    """
    site = load_site(name)
    start_log("deploy")
    deploy_site(
        site,
        source,
        yes=yes,
        force=force,
        skip_db=skip_db,
        skip_assets=skip_assets,
        seed=seed,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        mysql_password=mysql_password,
        https=https,
    )


def preserve_script(root: str, preserve_dir: str) -> str:
    lines = ["set -e", f"mkdir -p {preserve_dir}"]
    for item in PRESERVE_ITEMS:
        parent = f"{preserve_dir}/{item}".rsplit("/", 1)[0]
        lines.append(f"if [ -e {root}/{item} ]; then mkdir -p {parent} && cp -a {root}/{item} {preserve_dir}/{item}; fi")
    return "\n".join(lines)


def restore_script(root: str, preserve_dir: str) -> str:
    lines = ["set -e"]
    for item in PRESERVE_ITEMS:
        parent = f"{root}/{item}".rsplit("/", 1)[0]
        lines.append(
            f"if [ -e {preserve_dir}/{item} ]; then mkdir -p {parent} && rm -rf {root}/{item} "
            f"&& cp -a {preserve_dir}/{item} {root}/{item}; fi"
        )
    return "\n".join(lines)


def selective_delete_script(root: str) -> str:
    """Remove the app files a new release replaces, plus non-Laravel files near the top."""
    lines = [f"cd {root} || exit 1"]
    lines += [f"rm -fv {pattern}" for pattern in REPLACE_PATTERNS]
    names = " -o ".join(f"-name '{pattern}'" for pattern in NON_LARAVEL_PATTERNS)
    lines.append(
        f"find . -maxdepth 2 -type f \\( {names} \\) -not -path './vendor/*' -not -path './storage/*' -print -delete"
    )
    lines.append("true")
    return "\n".join(lines)


def copy_release_script(staging: str, root: str) -> str:
    lines = ["set -e"]
    for item in COPY_ITEMS:
        lines.append(f"if [ -d {staging}/{item} ]; then mkdir -p {root}/{item} && cp -a {staging}/{item}/. {root}/{item}/; fi")
    for name in ADDITIONAL_FILES:
        lines.append(f"if [ -f {staging}/{name} ]; then cp -a {staging}/{name} {root}/{name}; fi")
    return "\n".join(lines)


@deploy_app.command(name="replace")
def deploy_replace(
    name: str,
    source: str,
    *,
    yes: bool = False,
    skip_assets: bool = False,
    timeout: int = COMPOSER_TIMEOUT,
):
    """Replace the application files of a live site, keeping .env, logs and uploads.

    :param name: Site name
    :param source: Local Laravel project directory
    :param yes: Skip the confirmation prompt
    :param skip_assets: Skip npm install and build
    :param timeout: Composer install timeout in seconds
    """
    site = load_site(name)
    start_log("selective_replace")
    root = site["web_root"]
    require_root(site)

    source = str(Path(source).resolve())
    if not Path(source).is_dir():
        error(f"Source directory not found: {source}")
    if not confirm(f"Replace application files in {root} with {source}?", yes):
        warn("Replace cancelled")
        return

    section("Step 1: Backup")
    create_backup(site)

    section("Step 2: Preserve .env, logs and uploads")
    preserve_dir = f"/tmp/preserve_{timestamp()}"
    ssh_script(site, preserve_script(root, preserve_dir))
    log(f"Preserved into {preserve_dir}")

    section("Step 3: Upload to staging")
    staging = f"{STAGING_ROOT}/{site['domain']}"
    rsync(source, site, staging, exclude=SOURCE_EXCLUDE)

    section("Step 4: Remove replaced files")
    removed = ssh_script(site, selective_delete_script(root), check=False)
    log_detail("removed files", removed)
    log(f"Removed {len([line for line in removed.splitlines() if line.strip()])} file(s)")

    section("Step 5: Copy new release")
    ssh_script(site, copy_release_script(staging, root))

    section("Step 6: Restore preserved files")
    ssh_script(site, restore_script(root, preserve_dir))

    section("Step 7: Environment")
    ensure_env(site)
    write_env_updates(site, production_env_updates(site))

    section("Step 8: Permissions")
    set_permissions(site)

    section("Step 9: Dependencies")
    install_composer(site, timeout=timeout)
    if not skip_assets:
        install_assets(site)

    section("Step 10: Laravel setup")
    if not parse_env(read_env(site) or "").get("APP_KEY"):
        generate_key(site)
    run_migrations(site, safe=True)
    optimize_laravel(site)

    section("Step 11: Services")
    restart_services(site)
    final_checks(site)
    record_source_hash(site, compute_hash(source))
    log(f"Done! Preserved files remain in {preserve_dir}")


@deploy_app.command(name="master")
def deploy_master(
    name: str,
    source: str,
    *,
    yes: bool = False,
    force: bool = False,
    skip_db: bool = False,
    skip_assets: bool = False,
    seed: bool = False,
    db_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    mysql_password: str | None = None,
    https: bool = False,
):
    """Pre-deploy check, full deploy and post-deploy verify in one run.

    With --yes a failed verification aborts instead of asking.

    :param name: Site name
    :param source: Local Laravel project directory
    :param yes: Skip confirmation prompts
    :param force: Upload even if the source hash is unchanged
    :param skip_db: Skip database provisioning and migrations
    :param skip_assets: Skip npm install and build
    :param seed: Run db:seed after migrating
    :param db_name: Database name (prompted when omitted)
    :param db_user: Database user (prompted when omitted)
    :param db_password: Database password (prompted, or generated when empty)
    :param mysql_password: MySQL root password (default: $MYSQL_ROOT_PASSWORD or prompt)
    :param https: Plain panel only: write the HTTPS vhost (certificate must exist)
    """
    site = load_site(name)
    start_log("master_deploy")
    domain = site["domain"]
    try:
        if not confirm(f"Run the full deployment of {source} to {domain}?", yes):
            warn("Deployment cancelled")
            return

        section("Phase 1: Pre-deploy check")
        if not pre_deploy_report(site, source).summary():
            error("Host not ready, fix the failures above and re-run")

        section("Phase 2: Deploy")
        deploy_site(
            site,
            source,
            yes=True,
            force=force,
            skip_db=skip_db,
            skip_assets=skip_assets,
            seed=seed,
            db_name=db_name,
            db_user=db_user,
            db_password=db_password,
            mysql_password=mysql_password,
            https=https,
        )

        section("Phase 3: Post-deploy verify")
        if not post_deploy_report(site).summary():
            if yes or not confirm("Verification found critical issues. Continue anyway?"):
                error(f"Stopped after verify. To roll back: deploy-laravel deploy rollback {name}")

        section("Deployment complete")
        print(f"  Site:      https://{domain}  (http://{domain})")
        print(f"  Web root:  {site['web_root']}")
        print(f"  .env:      {env_path(site)}")
        print(f"  Backups:   {site['backup_dir']}")
        print(f"  DB creds:  {credentials_path(site)}")
        print(f"  Log:       {_log_file}")
        print("Useful commands:")
        print(f"  deploy-laravel check post {name}")
        print(f"  deploy-laravel laravel logs {name}")
        print(f"  deploy-laravel deploy rollback {name}")
    except KeyboardInterrupt:
        print()
        error(f"Interrupted. The site may be half deployed; roll back with: deploy-laravel deploy rollback {name}")


@deploy_app.command(name="backups")
def show_backups(name: str):
    """List backups on the host, newest first.

    :param name: Site name
    """
    site = load_site(name)
    out = ssh_output(
        site,
        f"cd {site['backup_dir']} 2>/dev/null && ls -1t backup_{site['domain']}_* 2>/dev/null | xargs -r du -h",
    )
    if not out:
        log(f"No backups in {site['backup_dir']}")
        return
    for line in out.splitlines():
        print(f"  {line}")


def import_database(site: dict, path: str) -> bool:
    creds = db_credentials(site)
    if not creds.get("DB_DATABASE") or not creds.get("DB_USERNAME"):
        warn("No database credentials in .env, cannot import")
        return False
    cmd = (
        f"{_mysql_pwd(creds.get('DB_PASSWORD', ''))}mysql "
        f"-u{shlex.quote(creds['DB_USERNAME'])} -h {shlex.quote(creds.get('DB_HOST') or '127.0.0.1')} "
        f"{shlex.quote(creds['DB_DATABASE'])} < {path}"
    )
    result = run_on(site, cmd, timeout=COMPOSER_TIMEOUT)
    if result.failed:
        error(f"Database import failed: {escape(result.stderr.strip())}", fatal=False)
        return False
    log(f"Database restored from {path}")
    return True


@deploy_app.command(name="rollback")
def rollback(name: str, *, backup: str | None = None, with_db: bool = False, yes: bool = False):
    """Restore the web root from a backup tarball.

    :param name: Site name
    :param backup: Files tarball to restore (default: newest)
    :param with_db: Also import the matching database dump
    :param yes: Skip the confirmation prompt
    """
    site = load_site(name)
    start_log("rollback")
    root = site["web_root"]
    require_root(site)
    if root.rstrip("/") in ("", "/var", "/var/www"):
        error(f"Refusing to clear {root!r}")

    archive = backup or next(iter(list_backups(site)), None)
    if not archive:
        error(f"No backups found in {site['backup_dir']}")
    if not archive.startswith("/"):
        archive = f"{site['backup_dir']}/{archive}"
    if not remote_exists(site, archive, "f"):
        error(f"Backup not found: {archive}")
    if not confirm(f"Restore {archive} into {root}? Current files will be deleted", yes):
        warn("Rollback cancelled")
        return

    section("Restore files")
    ssh_script(
        site,
        f"set -e\nmkdir -p {root}\nfind {root} -mindepth 1 -delete\ntar -xzf {archive} -C {root}",
        timeout=COMPOSER_TIMEOUT,
    )
    log(f"Restored {archive}")

    if with_db:
        section("Restore database")
        dump = archive.replace("_files.tar.gz", "_database.sql")
        if remote_exists(site, dump, "f"):
            import_database(site, dump)
        else:
            warn(f"No database dump next to the backup ({dump})")

    section("Permissions, caches, services")
    set_permissions(site, safe=True)
    for args in ("config:clear", "route:clear", "view:clear", "cache:clear"):
        artisan(site, args)
    restart_services(site, safe=True)
    log("Rollback complete")


@db_app.command(name="provision")
def db_provision(
    name: str,
    *,
    db_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    mysql_password: str | None = None,
    migrate: bool = False,
    seed: bool = False,
):
    """Create the database and user (idempotent), save credentials and update .env.

    :param name: Site name
    :param db_name: Database name (prompted when omitted)
    :param db_user: Database user (prompted when omitted)
    :param db_password: Database password (prompted, or generated when empty)
    :param mysql_password: MySQL root password (default: $MYSQL_ROOT_PASSWORD or prompt)
    :param migrate: Run migrations afterwards
    :param seed: Run db:seed after migrating
    """
    site = load_site(name)
    require_root(site)
    db_name, db_user, db_password = collect_db_settings(site, db_name, db_user, db_password)
    ensure_env(site)
    provision_database(site, db_name, db_user, db_password, mysql_root_password(mysql_password))
    if migrate:
        run_migrations(site, seed=seed)


@db_app.command(name="backup")
def db_backup(name: str):
    """Dump the site database into the backup dir using the credentials in .env.

    :param name: Site name
    """
    site = load_site(name)
    ssh(site, f"mkdir -p {site['backup_dir']} && chmod 700 {site['backup_dir']}")
    path = f"{site['backup_dir']}/{backup_name(site['domain'])}_database.sql"
    if not dump_database(site, path):
        sys.exit(1)


@nginx_app.command(name="config")
def nginx_config(name: str, *, https: bool = False, force: bool = False):
    """Write and enable the Laravel vhost (plain nginx hosts).

    :param name: Site name
    :param https: Redirect to HTTPS and serve with the Let's Encrypt certificate
    :param force: Write the vhost even on a FastPanel host
    """
    site = load_site(name)
    if site.get("panel") == "fastpanel" and not force:
        warn("FastPanel owns this site's vhost; to fix localhost access use: "
             f"deploy-laravel nginx bind {name}")
        return
    configure_nginx(site, https)


def nginx_backup_script(backup_dir: str, files: list[str]) -> str:
    lines = ["set -e", f"mkdir -p {backup_dir}"]
    for path in files:
        parent = f"{backup_dir}{path}".rsplit("/", 1)[0]
        lines.append(f"if [ -f {path} ]; then mkdir -p {parent} && cp -a {path} {backup_dir}{path}; fi")
    return "\n".join(lines)


def nginx_restore_script(backup_dir: str, files: list[str]) -> str:
    return "\n".join(
        f"if [ -f {backup_dir}{path} ]; then cp -a {backup_dir}{path} {path}; fi" for path in files
    )


@nginx_app.command(name="bind")
def nginx_bind(name: str, *, external_ip: str | None = None, universal: bool = True):
    """Make a FastPanel site bound to its external IP also answer on localhost.

    Patches the site config in place; restores the backup if nginx -t fails.

    :param name: Site name
    :param external_ip: IP the site listens on (default: from descriptor or site config)
    :param universal: Also add ``listen 80;`` when no wildcard listen exists
    """
    site = load_site(name)
    start_log("nginx_binding_fix")
    require_root(site)
    conf_path = site["nginx_conf"]

    section("Step 1: Current bindings")
    for line in port_bindings(site, 80):
        info(escape(line))
    text = ssh_read_file(site, conf_path)
    if text is None:
        error(f"Site config not found: {conf_path}")
    for directive in find_listen_directives(text):
        info(f"listen {directive}")
    ip = external_ip or site.get("external_ip") or detect_external_ip(site)
    if not ip:
        error("Could not determine the external IP, pass --external-ip")
    patched, changed = add_local_listens(text, ip, universal=universal)

    section("Step 2: Backup")
    backup_dir = f"/root/nginx_backup_{timestamp()}"
    files = [conf_path, *NGINX_HELPER_CONFS, *OBSOLETE_BINDING_CONFS]
    ssh_script(site, nginx_backup_script(backup_dir, files))
    log(f"Backed up to {backup_dir}")

    section("Step 3: Remove earlier binding configs")
    for path in OBSOLETE_BINDING_CONFS:
        if remote_exists(site, path, "f"):
            ssh(site, f"rm -f {path}")
            log(f"Removed {path}")

    section("Step 4: Patch site config")
    if changed:
        ssh_write_file(site, conf_path, patched)
        log(f"Added local listen directives after listen {ip}:80")
    else:
        log("Site config already listens locally")

    section("Step 5: Test and reload")
    result = run_on(site, "nginx -t")
    log_detail("nginx -t", result.stderr)
    if result.failed:
        ssh_script(site, nginx_restore_script(backup_dir, files))
        error(f"nginx -t failed, restored {backup_dir}: {escape(result.stderr.strip())}")
    if not reload_nginx(site):
        error("nginx reload and restart both failed")
    log("nginx reloaded")

    section("Step 6: Verify")
    for line in port_bindings(site, 80):
        info(escape(line))
    for url in ("http://localhost/", "http://127.0.0.1/", f"http://{ip}/"):
        code = remote_http_status(site, url)
        if classify_status(code) == "ok":
            ok(f"{url} -> {code}")
        else:
            fail(f"{url} -> {code or 'no response'}")


@nginx_app.command(name="status")
def nginx_status(name: str):
    """Show nginx config test, service state, site listens and port 80 bindings.

    :param name: Site name
    """
    site = load_site(name)
    result = run_on(site, "nginx -t")
    if result.failed:
        fail(f"nginx -t: {escape(result.stderr.strip())}")
    else:
        ok("nginx -t: configuration valid")
    info(f"nginx service: {ssh_output(site, 'systemctl is-active nginx 2>/dev/null') or 'unknown'}")
    conf = ssh_read_file(site, site["nginx_conf"])
    if conf is None:
        warn(f"Site config not found: {site['nginx_conf']}")
    else:
        for directive in find_listen_directives(conf):
            info(f"listen {directive}")
    bindings = port_bindings(site, 80)
    if not bindings:
        warn("Nothing listens on port 80")
    for line in bindings:
        info(escape(line))


@fix_app.command(name="http500")
def fix_http500(name: str, *, settle: int = 5):
    """Diagnose and repair an HTTP 500: status, diagnostics, auto-fix, re-test.

    :param name: Site name
    :param settle: Seconds to wait after the fixes before re-testing
    """
    site = load_site(name)
    start_log("fix_http500")
    require_root(site)

    section("Step 1: Current status")
    initial = remote_http_status(site, "http://localhost/")
    if classify_status(initial) == "ok":
        log(f"http://localhost/ returns {initial}, no fix needed")
        return
    warn(f"http://localhost/ returns {initial or 'no response'}")

    section("Step 2: Diagnostics")
    environment_report(site).summary()

    section("Step 3: Auto-fix")
    failed = auto_fix(site)
    if failed:
        warn(f"{len(failed)} fix step(s) failed: {', '.join(failed)}")

    section("Step 4: Re-test")
    time.sleep(settle)
    final = wait_for_http(site, "http://localhost/")
    print(f"Initial status: {initial or 'no response'}  Final status: {final or 'no response'}")
    status = classify_status(final)
    if status == "ok":
        log("Site is responding")
        return
    if status == "server_error":
        print("Still failing. Read the logs:")
        print(f"  deploy-laravel laravel logs {name}")
        print(f"  deploy-laravel check http {name}")
    else:
        print("Not a 500 any more. Check DNS, firewall and bindings:")
        print(f"  deploy-laravel site verify {name}")
        print(f"  deploy-laravel nginx bind {name}")
    print(f"Log: {_log_file}")
    sys.exit(1)


@fix_app.command(name="laravel")
def fix_laravel(
    name: str,
    *,
    safe: bool = False,
    overwrite: bool = False,
    yes: bool = False,
    timeout: int = COMPOSER_TIMEOUT,
):
    """Bring a broken app back to a working Laravel 10 layout and reinstall dependencies.

    :param name: Site name
    :param safe: Report failing steps and continue instead of stopping
    :param overwrite: Rewrite core bootstrap files even if present
    :param yes: Skip the confirmation prompt
    :param timeout: Composer install timeout in seconds
    """
    site = load_site(name)
    start_log("fix_laravel_compatibility")
    root = site["web_root"]
    require_root(site)
    if not confirm(f"Rewrite core files and reinstall dependencies in {root}?", yes):
        warn("Fix cancelled")
        return

    section("Step 1: Core files")
    for rel, content in LARAVEL_CORE_FILES.items():
        if remote_exists(site, f"{root}/{rel}", "f") and not overwrite:
            log(f"{rel} present, kept")
            continue
        write_laravel_file(site, rel, content, safe=safe)
    for rel, content in LARAVEL_SUPPORT_FILES.items():
        if not remote_exists(site, f"{root}/{rel}", "f"):
            write_laravel_file(site, rel, content, safe=safe)

    section("Step 2: composer.json")
    composer_path = f"{root}/composer.json"
    text = ssh_read_file(site, composer_path)
    composer = None
    if text is None:
        error("composer.json not found", fatal=not safe)
    else:
        try:
            composer = json.loads(text)
        except json.JSONDecodeError as e:
            error(f"composer.json is not valid JSON: {e}", fatal=not safe)
    if composer is not None:
        composer, changed = pin_laravel_10(composer)
        backup = f"{composer_path}.backup.{timestamp()}"
        if not changed:
            log("composer.json already targets Laravel 10")
        elif run_on(site, f"cp {composer_path} {backup}").failed:
            error("Cannot back up composer.json, left unchanged", fatal=not safe)
        elif ssh_write_file(site, composer_path, json.dumps(composer, indent=4, ensure_ascii=False) + "\n", safe=safe):
            log(f"Pinned Laravel 10 constraints (backup: {backup})")

    section("Step 3: Reinstall dependencies")
    ssh_ok(site, f"rm -rf {root}/vendor {root}/composer.lock")
    install_composer(site, timeout=timeout, safe=safe)

    section("Step 4: Directories and permissions")
    scaffold_laravel(site, safe=safe)
    set_permissions(site, safe=safe)

    section("Step 5: Application key")
    ensure_env(site, safe=safe)
    if not generate_key(site, safe=safe):
        error("APP_KEY could not be set", fatal=not safe)

    section("Step 6: Caches")
    if not optimize_laravel(site):
        error("Cache rebuild reported problems", fatal=not safe)

    section("Step 7: Bootstrap check")
    result = check_bootstrap(site)
    if result.failed:
        log_detail("bootstrap check", result.stdout + result.stderr)
        error(f"Laravel does not boot: {escape((result.stderr or result.stdout).strip()[-500:])}", fatal=not safe)
    else:
        log(f"Autoload and bootstrap OK ({result.stdout.strip()})")

    section("Step 8: Services")
    restart_services(site, safe=safe)

    section("Step 9: Final status")
    code = wait_for_http(site, "http://localhost/")
    if classify_status(code) == "ok":
        log(f"http://localhost/ -> {code}")
    else:
        error(f"http://localhost/ -> {code or 'no response'}; run: deploy-laravel fix http500 {name}")


@laravel_app.command(name="optimize")
def laravel_optimize(name: str):
    """Clear and rebuild config/route/view caches, link storage.

    :param name: Site name
    """
    if not optimize_laravel(load_site(name)):
        sys.exit(1)


@laravel_app.command(name="key")
def laravel_key(name: str):
    """Generate APP_KEY.

    :param name: Site name
    """
    site = load_site(name)
    ensure_env(site)
    generate_key(site)


@laravel_app.command(name="cron")
def laravel_cron(name: str):
    """Install the scheduler cron entry for the web user (once).

    :param name: Site name
    """
    ensure_cron(load_site(name))


@laravel_app.command(name="permissions")
def laravel_permissions(name: str):
    """Fix ownership and modes: files 644, dirs 755, storage and bootstrap/cache 775.

    :param name: Site name
    """
    site = load_site(name)
    require_root(site)
    set_permissions(site)


def nginx_error_log(conf: str) -> str:
    match = re.search(r"^\s*error_log\s+(\S+)", conf, re.M)
    return match.group(1).rstrip(";") if match else "/var/log/nginx/error.log"


@laravel_app.command(name="logs")
def laravel_logs(name: str, *, lines: int = 50):
    """Tail the Laravel, nginx and PHP-FPM logs.

    :param name: Site name
    :param lines: Lines per log
    """
    site = load_site(name)
    conf = ssh_read_file(site, site["nginx_conf"]) or ""
    logs = [
        ("Laravel", laravel_log(site)),
        ("nginx", nginx_error_log(conf)),
        ("PHP-FPM", f"/var/log/php{site.get('php_version') or ''}-fpm.log"),
    ]
    for title, path in logs:
        section(f"{title}: {path}")
        out = ssh_output(site, f"tail -n {lines} {path} 2>/dev/null")
        print(escape(out) if out else "(empty or missing)")


@laravel_app.command(name="scaffold")
def laravel_scaffold(name: str):
    """Create missing Laravel directories; never overwrites.

    :param name: Site name
    """
    scaffold_laravel(load_site(name))


if __name__ == "__main__":
    app()
