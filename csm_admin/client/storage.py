"""
Artifact fetch capability.

Object storage is an opaque collaborator: callers hand over a reference
and a destination. Only HTTP(S) references are fetched here; anything else
needs a fetcher supplied by the caller.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests

from ..errors import RequestRejected, TransportError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class ArtifactFetcher(ABC):
    @abstractmethod
    def fetch(self, reference: str, destination: Path) -> Path:
        """Download reference to destination and return the written path."""


class HttpArtifactFetcher(ArtifactFetcher):
    """Streams http(s) artifacts to disk."""

    def __init__(self, session: requests.Session = None, verify=True, proxies: dict = None, timeout: float = 60.0):
        self.session = session or requests.Session()
        self.verify = verify
        self.proxies = proxies
        self.timeout = timeout

    def fetch(self, reference: str, destination: Path) -> Path:
        scheme = urlparse(reference).scheme
        if scheme not in ("http", "https"):
            raise ValueError(f"Unsupported artifact scheme '{scheme}' in {reference}")

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        completed = False
        try:
            with self.session.get(
                reference, stream=True, verify=self.verify, proxies=self.proxies, timeout=self.timeout
            ) as response:
                if response.status_code >= 400:
                    raise RequestRejected("storage", reference, response.status_code)
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            partial.replace(destination)
            completed = True
        except requests.RequestException as e:
            raise TransportError("storage", "GET", reference, 1, cause=e)
        finally:
            if not completed:
                partial.unlink(missing_ok=True)

        logger.info(f"Fetched {reference} -> {destination}")
        return destination


def fetch_artifact(reference: Optional[str], destination: Path, fetcher: ArtifactFetcher = None) -> Path:
    if not reference:
        raise ValueError("No artifact reference")
    return (fetcher or HttpArtifactFetcher()).fetch(reference, destination)
