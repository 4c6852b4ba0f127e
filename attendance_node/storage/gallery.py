"""
Gallery - immutable snapshot of identities eligible for matching.

Reference embeddings are stacked into one read-only matrix so a match is a
single vectorized distance computation. Rebuilding produces a new Gallery;
snapshots already handed to a running pass are never touched.
"""

import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..config import EMBEDDING_DIM
from ..core.diagnostics import DiagnosticSink, get_diagnostic_sink
from ..core.exceptions import EmptyGalleryError


logger = logging.getLogger(__name__)


def _valid_embedding(embedding) -> Optional[np.ndarray]:
    if embedding is None:
        return None
    try:
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError):
        return None
    if vector.shape[0] != EMBEDDING_DIM or not np.all(np.isfinite(vector)):
        return None
    return vector


@dataclass(frozen=True)
class EnrolledIdentity:
    """An enrolled person as provided by the identity source."""
    identity_id: str
    display_name: str
    consent: bool
    embedding: Optional[Sequence[float]] = None
    extra_embeddings: Tuple[Sequence[float], ...] = ()

    @property
    def is_eligible(self) -> bool:
        return bool(self.consent) and _valid_embedding(self.embedding) is not None

    def reference_embeddings(self) -> List[np.ndarray]:
        """Primary embedding first, then any valid extra references."""
        refs = []
        for embedding in (self.embedding, *self.extra_embeddings):
            vector = _valid_embedding(embedding)
            if vector is not None:
                refs.append(vector)
        return refs


class Gallery:
    """Read-only snapshot of eligible identities."""

    def __init__(self, references: Dict[str, List[np.ndarray]], names: Dict[str, str]):
        owners: List[str] = []
        rows: List[np.ndarray] = []
        for identity_id, vectors in references.items():
            for vector in vectors:
                owners.append(identity_id)
                rows.append(vector)

        if rows:
            matrix = np.vstack(rows).astype(np.float32)
        else:
            matrix = np.zeros((0, EMBEDDING_DIM), dtype=np.float32)
        matrix.setflags(write=False)

        self._matrix = matrix
        self._owners = tuple(owners)
        self._names = MappingProxyType(dict(names))
        self.built_at = time.time()

    @classmethod
    def empty(cls) -> "Gallery":
        """Gallery for detect-only mode: everything is unmatched."""
        return cls({}, {})

    @property
    def matrix(self) -> np.ndarray:
        """(N, EMBEDDING_DIM) reference embeddings, one row per reference."""
        return self._matrix

    @property
    def owners(self) -> Tuple[str, ...]:
        """Identity id of each matrix row."""
        return self._owners

    @property
    def identity_ids(self) -> Tuple[str, ...]:
        return tuple(self._names.keys())

    def display_name(self, identity_id: str) -> Optional[str]:
        return self._names.get(identity_id)

    def reference_count(self, identity_id: str) -> int:
        return sum(1 for owner in self._owners if owner == identity_id)

    def __len__(self) -> int:
        return len(self._owners)

    def __contains__(self, identity_id: str) -> bool:
        return identity_id in self._names

    def __repr__(self) -> str:
        return f"Gallery(identities={len(self._names)}, references={len(self._owners)})"


class GalleryBuilder:
    """Builds Gallery snapshots from enrolled identities."""

    def __init__(self, sink: Optional[DiagnosticSink] = None):
        self.sink = sink or get_diagnostic_sink()

    def build(self, identities: Iterable[EnrolledIdentity]) -> Gallery:
        """
        Build a snapshot of every eligible identity.

        Identities are keyed by id; repeated ids merge their references and
        keep the first display name.

        Raises:
            EmptyGalleryError: no identity has consent and a valid embedding
        """
        references: Dict[str, List[np.ndarray]] = {}
        names: Dict[str, str] = {}
        skipped_consent = 0
        skipped_embedding = 0

        for identity in identities:
            if not identity.consent:
                skipped_consent += 1
                continue
            if not identity.is_eligible:
                skipped_embedding += 1
                continue

            references.setdefault(identity.identity_id, []).extend(identity.reference_embeddings())
            names.setdefault(identity.identity_id, identity.display_name)

        if skipped_consent or skipped_embedding:
            logger.info(
                f"Gallery skipped {skipped_consent} identities without consent, "
                f"{skipped_embedding} without a valid embedding"
            )

        if not references:
            error = EmptyGalleryError("No enrolled identities with consent and a valid face embedding")
            self.sink.warning(str(error), code=error.code, suggestion=error.suggestion)
            raise error

        gallery = Gallery(references, names)
        logger.info(f"Built {gallery!r}")
        return gallery
