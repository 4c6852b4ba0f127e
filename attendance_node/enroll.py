"""
Enrollment helper - one photo in, one enrolled identity out.

Usage:
    attendance-enroll --id s-001 --name "Ada Lovelace" --consent photo.jpg
"""

import argparse
import logging
import sys
from typing import Optional

import cv2
import numpy as np

from .config import config
from .core.exceptions import AttendanceError, EnrollmentError
from .core.singletons import get_model_manager
from .storage.gallery import EnrolledIdentity
from .storage.identities import JsonIdentitySource


logger = logging.getLogger(__name__)


def enroll_from_image(
    manager,
    source: JsonIdentitySource,
    image_path: str,
    identity_id: str,
    display_name: Optional[str] = None,
    consent: bool = False,
    append: bool = False,
) -> EnrolledIdentity:
    """
    Extract one embedding from an image and store it for identity_id.

    With append=True and an existing identity, the new embedding becomes an
    extra reference instead of replacing the primary one.

    Raises:
        EnrollmentError: unreadable image or no face found
        ModelNotReadyError: face model is not Ready
    """
    image = cv2.imread(image_path)
    if image is None:
        raise EnrollmentError(f"Could not read image: {image_path}")

    embedding = manager.extract_embedding(image)
    if embedding is None:
        raise EnrollmentError(f"No face detected in {image_path}")
    embedding = np.asarray(embedding, dtype=np.float32)

    existing = next((i for i in source.load() if i.identity_id == identity_id), None)
    if append and existing is not None and existing.embedding is not None:
        identity = EnrolledIdentity(
            identity_id=identity_id,
            display_name=display_name or existing.display_name,
            consent=consent or existing.consent,
            embedding=existing.embedding,
            extra_embeddings=tuple(existing.extra_embeddings) + (embedding,),
        )
    else:
        identity = EnrolledIdentity(
            identity_id=identity_id,
            display_name=display_name or identity_id,
            consent=consent,
            embedding=embedding,
        )

    source.upsert(identity)
    logger.info(f"Enrolled {identity_id} from {image_path} (consent={identity.consent})")
    return identity


def main():
    parser = argparse.ArgumentParser(description="Enroll a face for attendance")
    parser.add_argument("image", help="photo with a single clearly visible face")
    parser.add_argument("--id", required=True, dest="identity_id")
    parser.add_argument("--name", default=None)
    parser.add_argument("--consent", action="store_true")
    parser.add_argument("--append", action="store_true", help="add as an extra reference")
    parser.add_argument("--identities", default=config.IDENTITIES_PATH)
    parser.add_argument("--models", default=config.MODEL_LOCATION)
    args = parser.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    manager = get_model_manager()
    status = manager.initialize(args.models)
    if not status.is_ready:
        logger.error(f"Face model not ready ({status.state.value}): {status.detail}")
        sys.exit(1)

    try:
        enroll_from_image(
            manager,
            JsonIdentitySource(args.identities),
            args.image,
            args.identity_id,
            display_name=args.name,
            consent=args.consent,
            append=args.append,
        )
    except AttendanceError as e:
        logger.error(f"Enrollment failed: {e} [{e.code}]")
        sys.exit(1)


if __name__ == "__main__":
    main()
