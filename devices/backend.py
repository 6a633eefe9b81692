import logging
import subprocess
from typing import List, Optional, Tuple

TOOL_TEXT_KW = dict(text=True, encoding="utf-8", errors="ignore")

# Diagnostics folded into exceptions are capped so a chatty tool can't
# flood logs or error lists.
MAX_DIAGNOSTIC_CHARS = 300


def truncate(text: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class DeviceCommandError(RuntimeError):
    """An environment tool (simctl, avdmanager, adb, emulator) call failed."""


class DeviceBackend:
    """Creates, cleans and destroys one kind of ephemeral device.

    Backends are deliberately dumb: they only run tool commands. All of the
    bookkeeping (who holds which device, what state it is in) lives in
    DevicePool.
    """

    platform = "unknown"
    # Substring every pool-created device name carries. Used to spot
    # orphans left behind by a crashed process.
    name_marker = "-pool-"

    def __init__(self, command_timeout_s: float = 120.0):
        self.command_timeout_s = command_timeout_s

    def _run(self, cmd: List[str], timeout: Optional[float] = None, check: bool = True,
             input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        logging.debug(f"[DEVICE] {' '.join(cmd)}")
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                timeout=timeout or self.command_timeout_s,
                input=input_text,
                **TOOL_TEXT_KW,
            )
        except subprocess.TimeoutExpired as e:
            raise DeviceCommandError(f"Timed out after {e.timeout}s: {' '.join(cmd)}") from e
        except FileNotFoundError as e:
            raise DeviceCommandError(f"Tool not found: {cmd[0]}") from e

        if check and proc.returncode != 0:
            out = (proc.stderr or "") + (proc.stdout or "")
            raise DeviceCommandError(
                f"{' '.join(cmd[:3])} exited {proc.returncode}: {truncate(out)}"
            )
        return proc

    def name_for(self, device_type: str, suffix: str) -> str:
        return f"{device_type.replace(' ', '-')}{self.name_marker}{suffix}"

    # Lifecycle. Subclasses implement all of these.

    def create(self, name: str) -> str:
        """Create and boot a device, returning its handle."""
        raise NotImplementedError

    def is_healthy(self, handle: str) -> bool:
        raise NotImplementedError

    def install(self, handle: str, app_path: str):
        raise NotImplementedError

    def uninstall(self, handle: str, app_id: str):
        raise NotImplementedError

    def erase(self, handle: str):
        raise NotImplementedError

    def delete(self, handle: str):
        raise NotImplementedError

    def list_devices(self) -> List[Tuple[str, str]]:
        """Every device the tool can see, as (handle, name) pairs."""
        raise NotImplementedError

    def automation_id(self, handle: str) -> str:
        """Identifier the automation tool uses to address this device."""
        return handle
