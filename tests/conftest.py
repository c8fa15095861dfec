"""
Pytest fixtures for deploy-laravel tests.

Provides a fake host that answers shell commands by substring rules and
records every command, plus a FastPanel site descriptor.
"""
import base64
import re
from types import SimpleNamespace

import pytest

import deploy_laravel


BASE64_WRITE = re.compile(r"echo '([A-Za-z0-9+/=]*)' \| base64 -d > (\S+)")
BASE64_PIPE = re.compile(r"echo '([A-Za-z0-9+/=]*)' \| base64 -d \|")

FASTPANEL_CONF = """\
server {
    listen 203.0.113.10:80;
    server_name besthammer.club www.besthammer.club;
    root /var/www/besthammer_c_usr/data/www/besthammer.club;
    error_log /var/www/besthammer_c_usr/data/logs/besthammer.club-frontend.error.log;
}
server {
    listen 203.0.113.10:443 ssl http2;
    server_name besthammer.club www.besthammer.club;
}
"""


class FakeHost:
    """Stand-in for ``deploy_laravel.run_on``.

    Rules are checked newest first; the first rule whose fragment occurs in the
    command answers it. Unmatched commands succeed with empty output. A list as
    stdout gives successive answers, repeating the last one.
    """

    def __init__(self):
        self.commands = []
        self.rules = []
        self.on("id -u", "0")

    def on(self, fragment, stdout="", exited=0, stderr=""):
        answers = list(stdout) if isinstance(stdout, list) else [stdout]
        self.rules.insert(0, (fragment, answers, exited, stderr))
        return self

    def __call__(self, site, cmd, timeout=None):
        self.commands.append(cmd)
        for fragment, answers, exited, stderr in self.rules:
            if fragment in cmd:
                stdout = answers.pop(0) if len(answers) > 1 else answers[0]
                return SimpleNamespace(stdout=stdout, stderr=stderr, exited=exited, failed=exited != 0)
        return SimpleNamespace(stdout="", stderr="", exited=0, failed=False)

    def ran(self, fragment):
        return any(fragment in cmd for cmd in self.commands)

    def index(self, fragment):
        for i, cmd in enumerate(self.commands):
            if fragment in cmd:
                return i
        raise AssertionError(f"no command contains {fragment!r}")

    def all_written(self, path):
        """Contents of every base64 file write to ``path``, oldest first."""
        contents = []
        for cmd in self.commands:
            match = BASE64_WRITE.search(cmd)
            if match and match.group(2) == path:
                contents.append(base64.b64decode(match.group(1)).decode())
        return contents

    def written(self, path):
        contents = self.all_written(path)
        return contents[-1] if contents else None

    def piped(self, fragment):
        """Decoded stdin of the last command containing ``fragment``."""
        for cmd in reversed(self.commands):
            if fragment in cmd:
                match = BASE64_PIPE.search(cmd)
                if match:
                    return base64.b64decode(match.group(1)).decode()
        return None


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    """Keep run logs out of /tmp and start every test without a log file."""
    monkeypatch.setattr(deploy_laravel, "LOG_DIR", tmp_path)
    monkeypatch.setattr(deploy_laravel, "_log_file", None)
    return tmp_path


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    monkeypatch.setattr(deploy_laravel, "run_on", fake)
    monkeypatch.setattr(deploy_laravel.time, "sleep", lambda seconds: None)
    monkeypatch.setattr(deploy_laravel, "timestamp", lambda: "20250101_000000")
    return fake


@pytest.fixture
def site():
    data = deploy_laravel.site_defaults("besthammer.club")
    data.update({
        "name": "hammer",
        "host": "203.0.113.10",
        "php_version": "8.2",
        "external_ip": "203.0.113.10",
    })
    return data


@pytest.fixture
def root(site):
    return site["web_root"]


@pytest.fixture
def site_file(tmp_path, monkeypatch, site):
    """Write hammer.site.json into a temp working directory."""
    monkeypatch.chdir(tmp_path)
    deploy_laravel.save_site("hammer", site)
    return "hammer"


@pytest.fixture
def laravel_source(tmp_path):
    source = tmp_path / "src"
    (source / "app").mkdir(parents=True)
    for name in ("artisan", "composer.json", "package.json", ".env.example"):
        (source / name).write_text(name)
    (source / "app" / "User.php").write_text("<?php")
    return source
