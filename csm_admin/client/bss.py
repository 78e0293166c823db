"""
Boot-parameters adapter (BSS).

BSS holds what each node boots next: kernel, initrd and kernel command
line. Kernel and rootfs live in object storage under
s3://boot-images/<image id>/, which is how a node's boot image is found.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..deadline import Deadline
from ..errors import MalformedResponse
from ..xname import Xname
from .transport import ServiceClient

logger = logging.getLogger(__name__)

BOOT_IMAGE_RE = re.compile(r"s3://boot-images/([^/\s:]+)/")


@dataclass
class BootParameters:
    hosts: List[str] = field(default_factory=list)
    macs: List[str] = field(default_factory=list)
    nids: List[int] = field(default_factory=list)
    params: str = ""
    kernel: str = ""
    initrd: str = ""
    cloud_init: Dict[str, Any] = field(default_factory=dict)

    @property
    def boot_image_id(self) -> Optional[str]:
        """Image id from the kernel path, else from the rootfs in params."""
        for text in (self.kernel, self.params):
            match = BOOT_IMAGE_RE.search(text or "")
            if match:
                return match.group(1)
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BootParameters":
        return cls(
            hosts=list(data.get("hosts") or []),
            macs=list(data.get("macs") or []),
            nids=[int(n) for n in data.get("nids") or []],
            params=data.get("params") or "",
            kernel=data.get("kernel") or "",
            initrd=data.get("initrd") or "",
            cloud_init=dict(data.get("cloud-init") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "hosts": self.hosts,
            "params": self.params,
            "kernel": self.kernel,
            "initrd": self.initrd,
        }
        if self.macs:
            data["macs"] = self.macs
        if self.nids:
            data["nids"] = self.nids
        if self.cloud_init:
            data["cloud-init"] = self.cloud_init
        return data


class BootParametersClient:
    """Typed access to BSS boot parameters."""

    def __init__(self, client: ServiceClient):
        self.client = client

    def get_boot_parameters(self, hosts: Iterable[Xname] = None, deadline: Deadline = None) -> List[BootParameters]:
        """Boot parameters of hosts, or of every host BSS knows."""
        params = None
        if hosts is not None:
            params = {"name": [str(x) for x in hosts]}
            if not params["name"]:
                return []
        payload = self.client.get("/bootparameters", params=params, deadline=deadline)
        if not isinstance(payload, list):
            raise MalformedResponse(self.client.backend, self.client.url_for("/bootparameters"), "expected a list")
        entries = []
        for record in payload:
            try:
                entries.append(BootParameters.from_dict(record))
            except (TypeError, ValueError, AttributeError):
                logger.warning("Skipping malformed BSS boot parameters record")
        return entries

    def update_boot_parameters(self, boot_parameters: BootParameters, deadline: Deadline = None) -> None:
        self.client.patch("/bootparameters", json=boot_parameters.to_dict(), deadline=deadline)
        logger.info(f"BSS boot parameters updated for {','.join(boot_parameters.hosts)}")
