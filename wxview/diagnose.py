"""Hints on why reading WeChat's process memory may be refused."""

from __future__ import annotations

import subprocess
import sys

WECHAT_APP_PATH = "/Applications/WeChat.app"
CODESIGN_TIMEOUT = 5.0

_GENERIC_HINT = (
    " Try sudo, run from a local GUI terminal with Developer Tools permission,"
    " or re-sign WeChat ad-hoc and restart it."
)
_RUNTIME_HINT = (
    " This is a Hardened Runtime build; sudo alone can still fail with task_for_pid=5."
    " Grant your terminal app Developer Tools permission, or quit WeChat, run"
    " `sudo xattr -cr /Applications/WeChat.app` and"
    " `sudo codesign --force --deep --sign - /Applications/WeChat.app`, then restart WeChat."
)
_ADHOC_HINT = (
    " This looks ad-hoc signed; sudo should usually work. Make sure WeChat was"
    " restarted after signing and run from the local GUI user session."
)
_UNSUPPORTED_HINT = (
    " Automatic process-memory key scanning is only implemented for macOS WeChat 4.x in V1."
)
_SIGNATURE_PREFIXES = ("Signature=", "TeamIdentifier=", "Identifier=")


def compact_codesign_lines(output: str) -> list[str]:
    """The lines of codesign output that describe the signature."""
    lines = [
        line
        for line in (raw.strip() for raw in output.split("\n"))
        if line and ("flags=" in line or line.startswith(_SIGNATURE_PREFIXES))
    ]
    return lines or ["unknown"]


def build_permission_hint(codesign_output: str) -> str:
    """Advice that fits how the WeChat app is signed."""
    base = " WeChat signature: " + "; ".join(compact_codesign_lines(codesign_output)) + "."
    if "runtime" in codesign_output:
        return base + _RUNTIME_HINT
    if "Signature=adhoc" in codesign_output or "flags=0x2(adhoc)" in codesign_output:
        return base + _ADHOC_HINT
    return base + _GENERIC_HINT


def wechat_permission_hint() -> str:
    """A hint to append to a failed key scan, based on the installed WeChat."""
    if sys.platform != "darwin":
        return _UNSUPPORTED_HINT
    try:
        result = subprocess.run(
            ["codesign", "-dv", WECHAT_APP_PATH],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=CODESIGN_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return _GENERIC_HINT
    if result.returncode != 0:
        return _GENERIC_HINT
    return build_permission_hint(result.stdout.decode("utf-8", errors="replace"))