import logging
import subprocess
import threading
import time
from typing import Dict, List, Tuple

from devices.backend import DeviceBackend, DeviceCommandError

# Names of the Android SDK executables (assumed to be on PATH)
ADB = "adb"
AVDMANAGER = "avdmanager"
EMULATOR = "emulator"

# The emulator console only listens on even ports in this range.
FIRST_CONSOLE_PORT = 5554
LAST_CONSOLE_PORT = 5682


class AvdBackend(DeviceBackend):
    """Headless Android emulators, one AVD per pool device.

    The handle is the AVD name. Each booted AVD gets its own console port,
    and so its own adb serial (`emulator-<port>`), which is what Maestro
    needs for `--device`.
    """

    platform = "android"

    def __init__(
        self,
        system_image: str = "system-images;android-34;google_apis;x86_64",
        device_profile: str = "pixel_7",
        boot_timeout_s: float = 240.0,
        command_timeout_s: float = 120.0,
    ):
        super().__init__(command_timeout_s=command_timeout_s)
        self.system_image = system_image
        self.device_profile = device_profile
        self.boot_timeout_s = boot_timeout_s
        self._serials: Dict[str, str] = {}
        self._processes: Dict[str, subprocess.Popen] = {}
        # Port allocation happens from several job threads at once.
        self._ports_lock = threading.Lock()

    # adb helpers

    def _adb(self, serial: str, *args: str, timeout=None, check: bool = True):
        return self._run([ADB, "-s", serial, *args], timeout=timeout, check=check)

    def _serial(self, handle: str) -> str:
        serial = self._serials.get(handle)
        if not serial:
            raise DeviceCommandError(f"No running emulator for AVD {handle}")
        return serial

    def _allocate_port(self, handle: str) -> int:
        with self._ports_lock:
            used = {int(s.rsplit("-", 1)[1]) for s in self._serials.values()}
            for port in range(FIRST_CONSOLE_PORT, LAST_CONSOLE_PORT + 1, 2):
                if port not in used:
                    self._serials[handle] = f"emulator-{port}"
                    return port
        raise DeviceCommandError("No free emulator console ports")

    def _start(self, handle: str, wipe_data: bool = False):
        port = self._allocate_port(handle)
        cmd = [
            EMULATOR, "-avd", handle,
            "-port", str(port),
            "-no-window", "-no-audio", "-no-boot-anim", "-no-snapshot-save",
        ]
        if wipe_data:
            cmd.append("-wipe-data")
        logging.debug(f"[DEVICE] {' '.join(cmd)}")
        try:
            self._processes[handle] = subprocess.Popen(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except FileNotFoundError as e:
            self._serials.pop(handle, None)
            raise DeviceCommandError(f"Tool not found: {EMULATOR}") from e
        self._wait_for_boot(handle)

    def _wait_for_boot(self, handle: str):
        serial = self._serial(handle)
        self._adb(serial, "wait-for-device", timeout=self.boot_timeout_s)
        deadline = time.time() + self.boot_timeout_s
        while time.time() < deadline:
            if self._boot_completed(serial):
                return
            time.sleep(2)
        raise DeviceCommandError(f"{serial} did not finish booting in {self.boot_timeout_s}s")

    def _boot_completed(self, serial: str) -> bool:
        proc = self._adb(serial, "shell", "getprop", "sys.boot_completed", timeout=10, check=False)
        return proc.returncode == 0 and (proc.stdout or "").strip() == "1"

    def _stop(self, handle: str):
        serial = self._serials.pop(handle, None)
        if serial:
            self._adb(serial, "emu", "kill", timeout=30, check=False)
        proc = self._processes.pop(handle, None)
        if proc is not None:
            try:
                proc.wait(timeout=30)
            except subprocess.TimeoutExpired:
                proc.kill()

    # DeviceBackend

    def create(self, name: str) -> str:
        # avdmanager asks whether to create a custom hardware profile.
        self._run(
            [
                AVDMANAGER, "create", "avd",
                "-n", name,
                "-k", self.system_image,
                "-d", self.device_profile,
                "--force",
            ],
            input_text="no\n",
        )
        try:
            self._start(name)
        except DeviceCommandError:
            self.delete(name)
            raise
        return name

    def is_healthy(self, handle: str) -> bool:
        serial = self._serials.get(handle)
        if not serial:
            return False
        try:
            return self._boot_completed(serial)
        except DeviceCommandError:
            return False

    def install(self, handle: str, app_path: str):
        self._adb(self._serial(handle), "install", "-r", app_path, timeout=300)

    def uninstall(self, handle: str, app_id: str):
        self._adb(self._serial(handle), "uninstall", app_id, timeout=60)

    def erase(self, handle: str):
        # Cold boot with a wiped userdata partition.
        self._stop(handle)
        self._start(handle, wipe_data=True)

    def delete(self, handle: str):
        self._stop(handle)
        self._run([AVDMANAGER, "delete", "avd", "-n", handle])

    def list_devices(self) -> List[Tuple[str, str]]:
        proc = self._run([AVDMANAGER, "list", "avd", "-c"], timeout=60)
        names = [line.strip() for line in (proc.stdout or "").splitlines() if line.strip()]
        return [(n, n) for n in names]

    def automation_id(self, handle: str) -> str:
        return self._serial(handle)
