import json
import logging
from typing import List, Tuple

from devices.backend import DeviceBackend, DeviceCommandError, truncate

XCRUN = "xcrun"


class SimctlBackend(DeviceBackend):
    """iOS simulators driven through `xcrun simctl`."""

    platform = "ios"

    def __init__(self, device_type: str = "iPhone 15 Pro", command_timeout_s: float = 180.0):
        super().__init__(command_timeout_s=command_timeout_s)
        self.device_type = device_type

    def _simctl(self, *args: str, timeout=None, check: bool = True):
        return self._run([XCRUN, "simctl", *args], timeout=timeout, check=check)

    def _list_json(self, kind: str) -> dict:
        proc = self._simctl("list", kind, "-j", timeout=30)
        try:
            return json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as e:
            raise DeviceCommandError(f"simctl list {kind} returned non-JSON output") from e

    def _device_type_id(self) -> str:
        for dt in self._list_json("devicetypes").get("devicetypes", []):
            if dt.get("name") == self.device_type:
                return dt["identifier"]
        raise DeviceCommandError(f'Device type "{self.device_type}" not found')

    def _latest_runtime_id(self) -> str:
        runtimes = [
            r for r in self._list_json("runtimes").get("runtimes", [])
            if (r.get("name") or "").startswith("iOS") and r.get("isAvailable")
        ]
        if not runtimes:
            raise DeviceCommandError("No available iOS runtimes found")

        def version_key(r):
            return [int(p) for p in str(r.get("version", "0")).split(".") if p.isdigit()]

        runtimes.sort(key=version_key, reverse=True)
        return runtimes[0]["identifier"]

    def _boot(self, udid: str):
        proc = self._simctl("boot", udid, check=False)
        out = (proc.stderr or "") + (proc.stdout or "")
        # Booting an already-booted simulator is fine.
        if proc.returncode != 0 and "current state: Booted" not in out:
            raise DeviceCommandError(f"simctl boot {udid} failed: {truncate(out)}")
        proc = self._simctl("bootstatus", udid, "-b", check=False)
        if proc.returncode != 0:
            logging.debug(f"[SIMCTL] bootstatus returned {proc.returncode} for {udid}, continuing")

    def create(self, name: str) -> str:
        type_id = self._device_type_id()
        runtime_id = self._latest_runtime_id()
        udid = (self._simctl("create", name, type_id, runtime_id).stdout or "").strip()
        if not udid:
            raise DeviceCommandError(f"simctl create returned no UDID for {name}")
        self._boot(udid)
        return udid

    def is_healthy(self, handle: str) -> bool:
        try:
            self._simctl("bootstatus", handle, "-b", timeout=10)
            return True
        except DeviceCommandError:
            return False

    def install(self, handle: str, app_path: str):
        self._simctl("install", handle, app_path)

    def uninstall(self, handle: str, app_id: str):
        self._simctl("uninstall", handle, app_id, timeout=60)

    def erase(self, handle: str):
        self._simctl("shutdown", handle, check=False)
        self._simctl("erase", handle)
        self._boot(handle)

    def delete(self, handle: str):
        # May already be shut down.
        self._simctl("shutdown", handle, check=False)
        self._simctl("delete", handle)

    def list_devices(self) -> List[Tuple[str, str]]:
        found = []
        for runtime_devices in self._list_json("devices").get("devices", {}).values():
            for d in runtime_devices:
                found.append((d.get("udid", ""), d.get("name", "")))
        return found
