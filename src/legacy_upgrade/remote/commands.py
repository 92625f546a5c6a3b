"""
Shell fragments run on the device.

Everything here must work on a BusyBox ash with no optional applets: no
base64 unless probed, no xxd, no scp. Paths are always shell-quoted.
"""

from __future__ import annotations

import shlex

ECHO_PROBE = "echo ok"


def q(value: str) -> str:
    """Quote a value for the device shell."""
    return shlex.quote(value)


def has_tool(*names: str) -> str:
    """Succeeds when any of `names` is on PATH."""
    return " || ".join(f"which {name} >/dev/null 2>&1" for name in names)


def truncate(path: str) -> str:
    return f": > {q(path)}"


def remove(path: str) -> str:
    return f"rm -f {q(path)}"


def move(source: str, destination: str) -> str:
    return f"mv -f {q(source)} {q(destination)}"


def file_size(path: str) -> str:
    """Byte count via stat, falling back to wc when stat is missing."""
    return f"stat -c%s {q(path)} 2>/dev/null || wc -c < {q(path)}"


def sha256(path: str) -> str:
    return f"sha256sum {q(path)} 2>/dev/null | cut -d' ' -f1"


def is_executable(path: str) -> str:
    return f"test -x {q(path)}"


def append_hex(hex_data: str, path: str) -> str:
    """
    Decode one hex chunk and append it to `path`.

    sed turns every byte pair into a `\\xHH` escape and printf's %b
    writes the raw bytes.
    """
    return (
        f"echo -n '{hex_data}' | sed 's/../\\\\x&/g' | printf '%b' $(cat) >> {q(path)}"
    )


def append_hex_batch(hex_chunks: list[str], path: str) -> str:
    """Chain chunk appends so the batch stops at the first failure."""
    return " && ".join(append_hex(chunk, path) for chunk in hex_chunks)


def write_stdin(path: str) -> str:
    return f"cat > {q(path)}"


def base64_decode(encoded_path: str, path: str) -> str:
    return f"base64 -d {q(encoded_path)} > {q(path)} && rm -f {q(encoded_path)}"


def wget(url: str, path: str) -> str:
    return f"wget -q -O {q(path)} {q(url)}"


def install_file(source: str, destination: str) -> str:
    return f"cp {q(source)} {q(destination)} && chmod +x {q(destination)}"


def backup_file(path: str, timestamp: str) -> str:
    """Copy `path` aside with a timestamp suffix when it exists."""
    backup = f"{path}.backup.{timestamp}"
    return f"if [ -f {q(path)} ]; then cp {q(path)} {q(backup)}; fi"


def archive(paths: list[str], archive_path: str) -> str:
    """tar.gz `paths` into `archive_path`, tolerating missing entries."""
    sources = " ".join(q(p) for p in paths)
    return f"tar -czf {q(archive_path)} {sources} 2>/dev/null; test -s {q(archive_path)}"


def cat(path: str) -> str:
    return f"cat {q(path)}"


# =============================================================================
# safe-upgrade helper invocations
# =============================================================================


def helper_show(helper: str) -> str:
    return f"{q(helper)} show 2>/dev/null"


def helper_version(helper: str) -> str:
    return f"{q(helper)} show 2>/dev/null | head -1"


def helper_bootstrap(helper: str) -> str:
    return f"{q(helper)} bootstrap"


def helper_verify(helper: str, firmware: str) -> str:
    return f"{q(helper)} verify {q(firmware)}"


def helper_upgrade(
    helper: str,
    firmware: str,
    safety_timeout: int,
    *,
    force: bool = False,
) -> str:
    parts = [q(helper), "upgrade", "--reboot-safety-timeout", str(safety_timeout)]
    if force:
        parts.append("--force")
    parts.append(q(firmware))
    return " ".join(parts)


def helper_confirm_remaining(helper: str) -> str:
    return f"{q(helper)} confirm-remaining 2>/dev/null"


def helper_confirm(helper: str) -> str:
    return f"{q(helper)} confirm"
