"""
Device fingerprint for license binding
Identifies the physical host (not the browser or the container) from OS-level signals
"""
import asyncio
import hashlib
import inspect
import logging
import platform
import re
import socket
import time
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Sequence

import psutil

from config import PROBE_TIMEOUT

logger = logging.getLogger(__name__)

HARDWARE_PREFIX = "SRV"
FALLBACK_PREFIX = "HOST"
CLIENT_PREFIX = "DEV"

# Bump when the client fingerprint derivation changes; stored codes of other versions are regenerated
DEVICE_CODE_VERSION = 2

SIGNAL_SEPARATOR = "|"
ZERO_MAC = "00:00:00:00:00:00"

FALLBACK_WARNING = "Could not detect hardware info, using fallback method. The device code may change after a restart."

_DOCKER_CGROUP_RE = re.compile(r"docker[/-]([a-f0-9]{12})")
_CONTAINER_HOSTNAME_RE = re.compile(r"^[a-f0-9]{12}$")


class CollectionError(Exception):
    """A single identity probe failed"""
    pass


@dataclass
class DeviceIdentitySignals:
    """Host identity snapshot. Field order is the hashing order."""
    hostname: str = ""
    machine_id: str = ""
    cpu_model: str = ""
    mac_address: str = ""
    platform: str = ""
    container_id: str = ""

    def ordered(self) -> List[str]:
        return [self.hostname, self.machine_id, self.cpu_model,
                self.mac_address, self.platform, self.container_id]

    def joined(self) -> str:
        return SIGNAL_SEPARATOR.join(value for value in self.ordered() if value)


@dataclass
class DeviceCode:
    device_code: str
    method: str  # hardware, fallback, client
    warning: Optional[str] = None


@dataclass
class ClientFingerprint:
    """Lesser-trusted fingerprint reported by a client when the server probe is unreachable"""
    platform: str = ""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 0
    timezone: str = ""
    canvas: str = ""
    webgl: str = ""
    fonts: List[str] = field(default_factory=list)

    def joined(self) -> str:
        parts = [self.platform, str(self.screen_width), str(self.screen_height),
                 str(self.color_depth), self.timezone, self.canvas, self.webgl,
                 ",".join(sorted(self.fonts))]
        return SIGNAL_SEPARATOR.join(parts)


def format_code(prefix: str, material: str) -> str:
    """SHA-256 the material and format the first 12 hex chars as PREFIX-XXXX-XXXX-XXXX"""
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:12].upper()
    return f"{prefix}-{digest[0:4]}-{digest[4:8]}-{digest[8:12]}"


def encode_device_code(signals: DeviceIdentitySignals, now: Optional[float] = None) -> DeviceCode:
    """Derive the device code from collected signals, falling back to hostname + timestamp"""
    material = signals.joined()
    if material:
        return DeviceCode(device_code=format_code(HARDWARE_PREFIX, material), method="hardware")

    timestamp_ms = int((time.time() if now is None else now) * 1000)
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = ""
    logger.warning("No hardware signal available, using fallback device code")
    return DeviceCode(
        device_code=format_code(FALLBACK_PREFIX, f"{hostname}{SIGNAL_SEPARATOR}{timestamp_ms}"),
        method="fallback",
        warning=FALLBACK_WARNING,
    )


def encode_client_fingerprint(fingerprint: ClientFingerprint) -> DeviceCode:
    return DeviceCode(device_code=format_code(CLIENT_PREFIX, fingerprint.joined()), method="client")


def select_mac_address(addresses: Sequence[str]) -> str:
    """Deterministic pick: drop the all-zero address, normalize, sort, take the first"""
    macs = []
    for address in addresses:
        if not address:
            continue
        mac = address.strip().lower().replace("-", ":")
        if mac and mac != ZERO_MAC:
            macs.append(mac)
    return sorted(macs)[0] if macs else ""


class DeviceIdentityCollector:
    """
    Collects the host identity signals.

    Each probe is independent: a probe that fails or times out yields an
    empty value for its signal and never fails the whole collection.
    """

    def __init__(
        self,
        timeout: float = PROBE_TIMEOUT,
        machine_id_paths: Sequence[str] = ("/etc/machine-id", "/var/lib/dbus/machine-id"),
        cpuinfo_path: str = "/proc/cpuinfo",
        cgroup_path: str = "/proc/self/cgroup",
        hostname_path: str = "/etc/hostname",
    ):
        self.timeout = timeout
        self.machine_id_paths = tuple(machine_id_paths)
        self.cpuinfo_path = cpuinfo_path
        self.cgroup_path = cgroup_path
        self.hostname_path = hostname_path

    async def collect(self) -> DeviceIdentitySignals:
        """Run all probes concurrently and aggregate whatever succeeded"""
        values = await asyncio.gather(
            self._safe("hostname", self.probe_hostname),
            self._safe("machine_id", self.probe_machine_id),
            self._safe("cpu_model", self.probe_cpu_model),
            self._safe("mac_address", self.probe_mac_address),
            self._safe("platform", self.probe_platform),
            self._safe("container_id", self.probe_container_id),
        )
        return DeviceIdentitySignals(*values)

    async def _safe(self, name: str, probe) -> str:
        """Run one probe under its own deadline; blocking probes run in the default executor"""
        if inspect.iscoroutinefunction(probe):
            # Command probes bound the subprocess by self.timeout, then may fall back in-process
            pending, deadline = probe(), self.timeout * 2
        else:
            loop = asyncio.get_running_loop()
            pending, deadline = loop.run_in_executor(None, probe), self.timeout

        try:
            value = await asyncio.wait_for(pending, timeout=deadline)
        except asyncio.TimeoutError:
            logger.debug(f"Device probe {name} timed out after {deadline}s")
            return ""
        except Exception as e:
            logger.debug(f"Device probe {name} failed: {e}")
            return ""
        return (value or "").strip()

    async def run_command(self, *args: str) -> str:
        """Run a read-only system utility with a hard timeout"""
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise CollectionError(f"{args[0]}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CollectionError(f"{args[0]} timed out after {self.timeout}s")
        except asyncio.CancelledError:
            proc.kill()
            raise

        if proc.returncode != 0:
            raise CollectionError(f"{args[0]} exited with {proc.returncode}")
        return stdout.decode("utf-8", errors="ignore").strip()

    async def probe_hostname(self) -> str:
        try:
            return await self.run_command("hostname")
        except CollectionError:
            return socket.gethostname()

    def probe_machine_id(self) -> str:
        for path in self.machine_id_paths:
            try:
                with open(path, "r") as f:
                    machine_id = f.read().strip()
            except OSError:
                continue
            if machine_id:
                return machine_id
        return ""

    def probe_cpu_model(self) -> str:
        try:
            with open(self.cpuinfo_path, "r") as f:
                for line in f:
                    if line.startswith("model name"):
                        return line.split(":", 1)[1].strip()
        except OSError:
            pass
        return platform.processor()

    def probe_mac_address(self) -> str:
        addresses = []
        for name, addrs in psutil.net_if_addrs().items():
            if name == "lo" or name.lower().startswith("loopback"):
                continue
            for addr in addrs:
                if addr.family == psutil.AF_LINK:
                    addresses.append(addr.address)
        return select_mac_address(addresses)

    async def probe_platform(self) -> str:
        try:
            return await self.run_command("uname", "-sr")
        except CollectionError:
            return f"{platform.system()} {platform.release()} {platform.machine()}"

    def probe_container_id(self) -> str:
        try:
            with open(self.cgroup_path, "r") as f:
                match = _DOCKER_CGROUP_RE.search(f.read())
            if match:
                return match.group(1)
        except OSError:
            pass

        try:
            with open(self.hostname_path, "r") as f:
                hostname = f.read().strip()
        except OSError:
            return ""
        return hostname if _CONTAINER_HOSTNAME_RE.match(hostname) else ""


async def device_fingerprint_response(collector: Optional[DeviceIdentityCollector] = None) -> dict:
    """Body of GET /api/device-fingerprint"""
    collector = collector or DeviceIdentityCollector()
    signals = await collector.collect()
    code = encode_device_code(signals)

    if code.method == "fallback":
        return {"deviceCode": code.device_code, "method": code.method, "info": code.warning}

    values = asdict(signals)
    return {
        "deviceCode": code.device_code,
        "method": code.method,
        "fingerprint": {
            "hostname": values["hostname"] or "unknown",
            "machineId": values["machine_id"] or "unknown",
            "cpuInfo": values["cpu_model"] or "unknown",
            "macAddress": values["mac_address"] or "unknown",
            "platform": values["platform"] or "unknown",
            "containerId": values["container_id"] or "not-in-docker",
        },
    }
