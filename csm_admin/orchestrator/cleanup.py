"""
Delete a CFS session and undo what it left behind.

Dynamic sessions configure live nodes: the batcher is told to stop
retrying those nodes before the session goes. Image sessions produce
images: each result image is deleted unless some node still boots it.

Usage:
    from csm_admin.orchestrator.cleanup import SessionCleaner

    cleaner = SessionCleaner.from_clients(clients)
    result = cleaner.delete_and_cancel("compute-23-7-20240101120000-ab12", dry_run=True)
    print(result.to_dict())
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..deadline import Deadline
from ..errors import InvalidIdentifier
from ..nodeset import NodeSet
from ..xname import parse

logger = logging.getLogger(__name__)


@dataclass
class SessionCleanup:
    session: str
    target_definition: str
    dry_run: bool = False
    stopped: NodeSet = field(default_factory=NodeSet)
    deleted_images: List[str] = field(default_factory=list)
    kept_images: Dict[str, List[str]] = field(default_factory=dict)  # image id -> hosts booting it

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "target_definition": self.target_definition,
            "dry_run": self.dry_run,
            "stopped": self.stopped.fold(),
            "deleted_images": list(self.deleted_images),
            "kept_images": {image: list(hosts) for image, hosts in self.kept_images.items()},
        }


class SessionCleaner:
    def __init__(self, configuration, images, boot_parameters):
        self.configuration = configuration
        self.images = images
        self.boot_parameters = boot_parameters

    @classmethod
    def from_clients(cls, clients) -> "SessionCleaner":
        return cls(clients.configuration, clients.image, clients.boot_parameters)

    def delete_and_cancel(self, name: str, dry_run: bool = False, deadline: Deadline = None) -> SessionCleanup:
        """
        Cancel session name, clean up after it and delete it.

        Raises:
            ValueError: the session targets something other than nodes or images
            RequestRejected: the session does not exist
        """
        session = self.configuration.get_session(name, deadline=deadline)
        result = SessionCleanup(name, session.target_definition, dry_run)
        prefix = "Dry run: " if dry_run else ""

        if session.target_definition == "dynamic":
            result.stopped = self._session_nodes(session)
            if result.stopped:
                logger.info(f"{prefix}Stopping configuration retries on {result.stopped.fold()}")
                if not dry_run:
                    self.configuration.stop_retrying(result.stopped, deadline=deadline)
        elif session.target_definition == "image":
            if session.result_ids:
                self._delete_images(session.result_ids, result, deadline)
        else:
            raise ValueError(f"CFS session {name} targets '{session.target_definition}', expected dynamic or image")

        logger.info(f"{prefix}Deleting CFS session {name}")
        if not dry_run:
            self.configuration.delete_session(name, deadline=deadline)
        return result

    def _session_nodes(self, session) -> NodeSet:
        nodes = []
        for member in session.limit_ids + session.group_members:
            try:
                nodes.append(parse(member))
            except InvalidIdentifier:
                logger.debug(f"Session {session.name} limit entry '{member}' is not a node, skipped")
        return NodeSet(nodes)

    def _delete_images(self, image_ids: List[str], result: SessionCleanup, deadline: Deadline) -> None:
        booting: Dict[str, List[str]] = {}
        for entry in self.boot_parameters.get_boot_parameters(deadline=deadline):
            if entry.boot_image_id in image_ids:
                booting.setdefault(entry.boot_image_id, []).extend(entry.hosts)

        for image_id in image_ids:
            if image_id in booting:
                result.kept_images[image_id] = sorted(booting[image_id])
                logger.warning(f"Keeping image {image_id}: still booted by {len(booting[image_id])} node(s)")
                continue
            logger.info(f"{'Dry run: ' if result.dry_run else ''}Deleting image {image_id}")
            if not result.dry_run:
                self.images.delete_image(image_id, deadline=deadline)
            result.deleted_images.append(image_id)
