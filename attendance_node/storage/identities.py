"""
Identity source - read access to enrolled identities.

The JSON file layout:

    {
        "identities": [
            {
                "identity_id": "s-001",
                "display_name": "Ada Lovelace",
                "consent": true,
                "embedding": [128 floats] | null,
                "extra_embeddings": [[128 floats], ...]
            }
        ]
    }
"""

import json
import os
import threading
import logging
from typing import Iterable, List, Optional

import numpy as np

from .gallery import EnrolledIdentity


logger = logging.getLogger(__name__)


def _to_list(embedding) -> Optional[list]:
    if embedding is None:
        return None
    return [float(v) for v in np.asarray(embedding, dtype=np.float32).reshape(-1)]


def identity_to_dict(identity: EnrolledIdentity) -> dict:
    return {
        "identity_id": identity.identity_id,
        "display_name": identity.display_name,
        "consent": bool(identity.consent),
        "embedding": _to_list(identity.embedding),
        "extra_embeddings": [_to_list(e) for e in identity.extra_embeddings],
    }


def identity_from_dict(data: dict) -> EnrolledIdentity:
    return EnrolledIdentity(
        identity_id=str(data["identity_id"]),
        display_name=data.get("display_name") or str(data["identity_id"]),
        consent=data.get("consent") is True,
        embedding=data.get("embedding"),
        extra_embeddings=tuple(data.get("extra_embeddings") or ()),
    )


class IdentitySource:
    """Provides a snapshot of all enrolled identities."""

    def load(self) -> List[EnrolledIdentity]:
        raise NotImplementedError


class StaticIdentitySource(IdentitySource):
    """Fixed list of identities."""

    def __init__(self, identities: Iterable[EnrolledIdentity] = ()):
        self._identities = list(identities)

    def load(self) -> List[EnrolledIdentity]:
        return list(self._identities)


class JsonIdentitySource(IdentitySource):
    """Identities kept in a local JSON file."""

    def __init__(self, path: str = "data/identities.json"):
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> List[EnrolledIdentity]:
        """
        Read every identity. A missing file means nobody is enrolled yet;
        malformed entries are skipped with a warning.
        """
        with self._lock:
            if not os.path.exists(self.path):
                logger.warning(f"Identity file not found: {self.path}")
                return []
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)

        identities = []
        for entry in data.get("identities", []):
            try:
                identities.append(identity_from_dict(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed identity entry: {e}")

        logger.info(f"Loaded {len(identities)} identities from {self.path}")
        return identities

    def save(self, identities: Iterable[EnrolledIdentity]):
        """Replace the file contents atomically."""
        payload = {"identities": [identity_to_dict(i) for i in identities]}
        with self._lock:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)

    def upsert(self, identity: EnrolledIdentity):
        """Insert or replace one identity by id."""
        identities = [i for i in self.load() if i.identity_id != identity.identity_id]
        identities.append(identity)
        self.save(identities)
        logger.info(f"Stored identity {identity.identity_id}")
