"""
Image adapter (IMS v3).

Only metadata: the boot artifacts themselves live in object storage and
are fetched through csm_admin.client.storage.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..deadline import Deadline
from ..errors import RequestRejected
from .transport import ServiceClient

logger = logging.getLogger(__name__)


@dataclass
class Image:
    id: str
    name: str = ""
    created: str = ""
    arch: str = ""
    manifest_path: str = ""  # e.g. s3://boot-images/<id>/manifest.json
    manifest_etag: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Image":
        link = data.get("link") or {}
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            created=data.get("created", ""),
            arch=data.get("arch", ""),
            manifest_path=link.get("path", ""),
            manifest_etag=link.get("etag", ""),
        )


class ImageClient:
    """Typed access to IMS."""

    def __init__(self, client: ServiceClient):
        self.client = client

    def get_image(self, image_id: str, deadline: Deadline = None) -> Optional[Image]:
        try:
            payload = self.client.get(f"/images/{image_id}", deadline=deadline)
        except RequestRejected as e:
            if e.status == 404:
                return None
            raise
        return Image.from_dict(payload)

    def list_images(self, name_contains: str = None, deadline: Deadline = None) -> List[Image]:
        images = []
        for record in self.client.get("/images", deadline=deadline) or []:
            if "id" not in record:
                continue
            image = Image.from_dict(record)
            if name_contains and name_contains not in image.name:
                continue
            images.append(image)
        return sorted(images, key=lambda i: i.created)

    def artifact_reference(self, image_id: str, deadline: Deadline = None) -> Optional[str]:
        """Object-storage location of an image's manifest, if IMS knows one."""
        image = self.get_image(image_id, deadline=deadline)
        if image is None or not image.manifest_path:
            return None
        return image.manifest_path

    def delete_image(self, image_id: str, deadline: Deadline = None) -> None:
        self.client.delete(f"/images/{image_id}", deadline=deadline)
        logger.info(f"IMS image {image_id} deleted")
