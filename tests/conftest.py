"""
Pytest configuration for the legacy router upgrade tests.

FakeDevice stands in for the SSH channel: it interprets the shell fragments
from legacy_upgrade.remote.commands against an in-memory file table, so
transfers, verification and the upgrade flow run without a router.
"""

from __future__ import annotations

import base64
import hashlib
import re
import shlex
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from legacy_upgrade.config import AppConfig
from legacy_upgrade.errors import ConnectivityError
from legacy_upgrade.remote.ssh import CommandResult

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

HELPER_PATH = "/usr/sbin/safe-upgrade"
RPC_TOKEN = "a" * 32
COOKIE_TOKEN = "cookie-session-0123456789"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


_APPEND_RE = re.compile(r"^echo -n '([0-9a-f]*)' \| sed .* >> (\S+)$")
_HELPER_RE = re.compile(r"^(\S+) (show|bootstrap|verify|upgrade|confirm-remaining|confirm)\b(.*)$")


class FakeDevice:
    """
    In-memory BusyBox device driven by remote command fragments.

    Attributes:
        files: Device path -> content.
        executables: Paths that pass `test -x`.
        tools: Binaries `which` finds.
        log: Every command received, in order.
        has_stat: False makes `stat` missing so sizes come from `wc -c`.
        fail_patterns: Commands matching these exit 1.
        stall_patterns: Commands matching these time out.
    """

    def __init__(self, tools: set[str] | None = None) -> None:
        self.files: dict[str, bytes] = {}
        self.executables: set[str] = set()
        self.tools: set[str] = set(tools or ())
        self.log: list[str] = []
        self.closed = 0

        self.reachable = True
        self.has_stat = True
        self.fail_patterns: list[str] = []
        self.stall_patterns: list[str] = []
        self.reboot_polls = 0
        self._offline = 0

        self.show_output = "safe-upgrade version: 1.0\ncurrent partition: 1\nstable partition: 1"
        self.verify_ok = True
        self.upgrade_returncode = 255
        self.bootstrap_ok = True
        self.confirm_remaining: list[str] = ["1180"]
        self.confirm_ok = True
        self.upgrades: list[str] = []

    # -- RemoteExecutor ----------------------------------------------------

    async def run(
        self,
        command: str,
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.log.append(command)
        if not self.reachable:
            raise ConnectivityError("device unreachable")
        for pattern in self.stall_patterns:
            if re.search(pattern, command):
                raise ConnectivityError(f"Remote command timed out after {timeout or 60.0}s")
        for pattern in self.fail_patterns:
            if re.search(pattern, command):
                return CommandResult(returncode=1, stderr=b"injected failure")
        return await self._dispatch(command, stdin)

    async def close(self) -> None:
        self.closed += 1

    # -- helpers -----------------------------------------------------------

    def install_helper(self, content: bytes, show_output: str | None = None) -> None:
        self.files[HELPER_PATH] = content
        self.executables.add(HELPER_PATH)
        if show_output is not None:
            self.show_output = show_output

    def commands_matching(self, pattern: str) -> list[str]:
        return [c for c in self.log if re.search(pattern, c)]

    def size(self, path: str) -> int | None:
        content = self.files.get(path)
        return None if content is None else len(content)

    # -- interpreter -------------------------------------------------------

    async def _dispatch(self, command: str, stdin: bytes | None) -> CommandResult:
        ok = CommandResult(returncode=0)
        fail = CommandResult(returncode=1)

        if command == "echo ok":
            if self._offline > 0:
                self._offline -= 1
                raise ConnectivityError("device rebooting")
            return CommandResult(returncode=0, stdout=b"ok\n")

        if command.startswith("which "):
            names = re.findall(r"which (\S+)", command)
            return ok if any(n in self.tools for n in names) else fail

        if command.startswith("echo -n '"):
            for piece in command.split(" && "):
                match = _APPEND_RE.match(piece)
                if match is None:
                    return fail
                path = shlex.split(match.group(2))[0]
                self.files[path] = self.files.get(path, b"") + bytes.fromhex(match.group(1))
            return ok

        if command.startswith("if [ -f "):
            args = shlex.split(command.replace(";", " ; "))
            source, backup = args[args.index("cp") + 1], args[args.index("cp") + 2]
            if source in self.files:
                self.files[backup] = self.files[source]
            return ok

        if command.startswith("tar -czf "):
            archive = shlex.split(command)[2]
            self.files[archive] = b"\x1f\x8bfake-archive"
            return ok

        if command.startswith("stat -c%s "):
            if not self.has_stat:
                # stat is missing; the shell falls through to `wc -c < path`
                path = shlex.split(command.split(" || ", 1)[1])[-1]
                size = self.size(path)
                if size is None:
                    return fail
                return CommandResult(returncode=0, stdout=f"{size:>7}\n".encode())
            path = shlex.split(command)[2]
            size = self.size(path)
            if size is None:
                return fail
            return CommandResult(returncode=0, stdout=f"{size}\n".encode())

        if command.startswith("sha256sum "):
            path = shlex.split(command)[1]
            if path not in self.files:
                return CommandResult(returncode=0, stdout=b"\n")
            digest = hashlib.sha256(self.files[path]).hexdigest()
            return CommandResult(returncode=0, stdout=f"{digest}\n".encode())

        helper = _HELPER_RE.match(command)
        if helper and helper.group(1) == HELPER_PATH:
            return self._helper(helper.group(2), helper.group(3))

        args = shlex.split(command)
        name = args[0]

        if name == ":" and args[1] == ">":
            self.files[args[2]] = b""
            return ok
        if name == "rm":
            self.files.pop(args[-1], None)
            return ok
        if name == "mv":
            source, dest = args[-2], args[-1]
            if source not in self.files:
                return fail
            self.files[dest] = self.files.pop(source)
            return ok
        if name == "test" and args[1] == "-x":
            return ok if args[2] in self.executables else fail
        if name == "cat" and len(args) == 3 and args[1] == ">":
            self.files[args[2]] = stdin or b""
            return ok
        if name == "cat":
            if args[1] not in self.files:
                return fail
            return CommandResult(returncode=0, stdout=self.files[args[1]])
        if name == "base64":
            if "base64" not in self.tools:
                return CommandResult(returncode=127)
            encoded, dest = args[2], args[4]
            self.files[dest] = base64.decodebytes(self.files[encoded])
            self.files.pop(encoded, None)
            return ok
        if name == "wget":
            if "wget" not in self.tools:
                return CommandResult(returncode=127)
            dest, url = args[3], args[4]
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(url)
            if response.status_code != 200:
                return fail
            self.files[dest] = response.content
            return ok
        if name == "cp":
            source, dest = args[1], args[2]
            if source not in self.files:
                return fail
            self.files[dest] = self.files[source]
            self.executables.add(dest)
            return ok

        return CommandResult(returncode=127, stderr=f"unknown: {command}".encode())

    def _helper(self, action: str, rest: str) -> CommandResult:
        if action == "show":
            first_line = "| head -1" in rest
            lines = self.show_output.splitlines() or [""]
            output = lines[0] if first_line else self.show_output
            return CommandResult(returncode=0, stdout=f"{output}\n".encode())
        if action == "bootstrap":
            if self.bootstrap_ok:
                self.show_output = self.show_output.replace("not bootstrapped", "bootstrapped")
            return CommandResult(returncode=0 if self.bootstrap_ok else 1)
        if action == "verify":
            return CommandResult(
                returncode=0 if self.verify_ok else 1,
                stderr=b"" if self.verify_ok else b"image check failed",
            )
        if action == "upgrade":
            self.upgrades.append(rest.strip())
            self._offline = self.reboot_polls
            return CommandResult(returncode=self.upgrade_returncode)
        if action == "confirm-remaining":
            value = self.confirm_remaining.pop(0) if len(self.confirm_remaining) > 1 else self.confirm_remaining[0]
            return CommandResult(returncode=0, stdout=f"{value}\n".encode())
        if action == "confirm":
            if self.confirm_ok:
                self.confirm_remaining = ["-1"]
            return CommandResult(returncode=0 if self.confirm_ok else 1)
        return CommandResult(returncode=127)


def _multipart_fields(request: httpx.Request) -> dict[str, bytes]:
    """Split a multipart body into name -> raw value."""
    boundary = request.headers["content-type"].split("boundary=")[1].encode()
    fields: dict[str, bytes] = {}
    for part in request.content.split(b"--" + boundary):
        if b"\r\n\r\n" not in part:
            continue
        headers, _, value = part.partition(b"\r\n\r\n")
        match = re.search(rb'name="([^"]+)"', headers)
        if match:
            fields[match.group(1).decode()] = value[: -len(b"\r\n")]
    return fields


class FakeWebServer:
    """
    httpx MockTransport handler for the device web server and upstream.

    Attributes:
        requests: Every request seen, in order.
    """

    def __init__(
        self,
        device: FakeDevice,
        *,
        rpc_ok: bool = True,
        cookie_ok: bool = False,
        upload_ok: bool = True,
        helper_content: bytes | None = None,
    ) -> None:
        self.device = device
        self.rpc_ok = rpc_ok
        self.cookie_ok = cookie_ok
        self.upload_ok = upload_ok
        self.helper_content = helper_content
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "raw.githubusercontent.com":
            if self.helper_content is None:
                return httpx.Response(404)
            return httpx.Response(200, content=self.helper_content)

        if path == "/ubus":
            if not self.rpc_ok:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [6]})
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": 1, "result": [0, {"ubus_rpc_session": RPC_TOKEN}]},
            )

        if path == "/cgi-bin/luci":
            if not self.cookie_ok:
                return httpx.Response(403)
            return httpx.Response(
                302, headers={"set-cookie": f"sysauth={COOKIE_TOKEN}; path=/"}
            )

        if path == "/cgi-bin/cgi-upload":
            if not self.upload_ok:
                return httpx.Response(500)
            fields = _multipart_fields(request)
            if fields.get("sessionid", b"").decode() not in (RPC_TOKEN, COOKIE_TOKEN):
                return httpx.Response(403)
            target = fields["filename"].decode()
            self.device.files[target] = fields["filedata"]
            return httpx.Response(200, json={"size": len(fields["filedata"])})

        return httpx.Response(404)

    def count(self, predicate: Callable[[httpx.Request], bool]) -> int:
        return sum(1 for r in self.requests if predicate(r))


@pytest.fixture
def fake_device() -> FakeDevice:
    """A device with only BusyBox builtins."""
    return FakeDevice()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Config with a private cache and no real waits."""
    return AppConfig(
        **{
            "cache": {"directory": str(tmp_path / "cache")},
            "transfer": {"advertise_host": "127.0.0.1", "http_pull_port": 0},
            "upgrade": {
                "reboot_initial_wait": 0,
                "reboot_poll_interval": 1,
                "reboot_max_wait": 3,
                "confirm_poll_interval": 1,
            },
        }
    )


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[..., Path]:
    """Create a local file of a given size with non-trivial content."""

    def _write(name: str, size: int) -> Path:
        path = tmp_path / name
        path.write_bytes(bytes((i * 31 + 7) % 256 for i in range(size)))
        return path

    return _write


async def no_sleep(_seconds: float) -> None:
    return None


def make_prompt(answer: bool) -> Callable[[str], bool]:
    questions: list[str] = []

    def _prompt(question: str) -> bool:
        questions.append(question)
        return answer

    _prompt.questions = questions  # type: ignore[attr-defined]
    return _prompt


def helper_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
