"""
Model artifact fetching.

A model location is either a local directory or an http(s) base URL holding:

    manifest.json
        {
            "embedding_dim": 128,
            "normalize": false,
            "models": {
                "detector": {"file": "det_500m.onnx", "sha256": "..."},
                "embedder": {"file": "face_descriptor_128.onnx", "sha256": "..."}
            }
        }
    <weight files named in the manifest>

The manifest and all weight files are fetched and validated as one set.
Remote sets are downloaded into a staging directory and only moved into the
cache once every file passed validation, so a failed fetch never leaves a
half-updated model behind.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from ..config import EMBEDDING_DIM
from ..core.exceptions import ModelLoadError


logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
REQUIRED_MODELS = ("detector", "embedder")


@dataclass(frozen=True)
class ModelArtifacts:
    """A validated set of model files on local disk."""
    location: str
    directory: Path
    detector_path: Path
    embedder_path: Path
    normalize: bool
    manifest: dict


def is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def parse_manifest(raw: bytes, source: str) -> dict:
    """Parse and sanity-check a manifest. Raises ModelLoadError."""
    try:
        manifest = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ModelLoadError(f"Invalid JSON in model manifest {source}: {e}") from e

    if not isinstance(manifest, dict) or not isinstance(manifest.get("models"), dict):
        raise ModelLoadError(f"Model manifest {source} has no 'models' section")

    for name in REQUIRED_MODELS:
        entry = manifest["models"].get(name)
        if not isinstance(entry, dict) or not entry.get("file"):
            raise ModelLoadError(f"Model manifest {source} is missing the '{name}' file entry")
        if "/" in entry["file"] or "\\" in entry["file"]:
            raise ModelLoadError(f"Model manifest {source}: '{name}' file must be a plain file name")

    dim = manifest.get("embedding_dim", EMBEDDING_DIM)
    if dim != EMBEDDING_DIM:
        raise ModelLoadError(
            f"Model manifest {source} declares {dim}-d embeddings, expected {EMBEDDING_DIM}"
        )

    return manifest


def validate_set(directory: Path, manifest: dict):
    """Check every weight file exists, is non-empty and matches its checksum."""
    for name in REQUIRED_MODELS:
        entry = manifest["models"][name]
        path = directory / entry["file"]

        if not path.is_file():
            raise ModelLoadError(f"Model file not found: {path}")
        if path.stat().st_size == 0:
            raise ModelLoadError(f"Model file is empty: {path}")

        expected = entry.get("sha256")
        if expected and file_sha256(path) != expected.lower():
            raise ModelLoadError(f"Checksum mismatch for model file: {entry['file']}")


def _artifacts(location: str, directory: Path, manifest: dict) -> ModelArtifacts:
    models = manifest["models"]
    return ModelArtifacts(
        location=location,
        directory=directory,
        detector_path=directory / models["detector"]["file"],
        embedder_path=directory / models["embedder"]["file"],
        normalize=bool(manifest.get("normalize", False)),
        manifest=manifest,
    )


def _fetch_local(location: str) -> ModelArtifacts:
    directory = Path(location)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.is_file():
        raise ModelLoadError(f"Failed to fetch model file: {manifest_path}")

    manifest = parse_manifest(manifest_path.read_bytes(), str(manifest_path))
    validate_set(directory, manifest)
    return _artifacts(location, directory, manifest)


def _download(session: requests.Session, url: str, dest: Path, timeout: float):
    try:
        with session.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    f.write(chunk)
    except requests.RequestException as e:
        raise ModelLoadError(f"Failed to fetch model file: {url} ({e})") from e


def _fetch_remote(
    location: str,
    cache_dir: Path,
    timeout: float,
    session: Optional[requests.Session] = None,
) -> ModelArtifacts:
    base = location.rstrip("/")
    session = session or requests.Session()

    manifest_url = f"{base}/{MANIFEST_NAME}"
    try:
        response = session.get(manifest_url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise ModelLoadError(f"Failed to fetch model file: {manifest_url} ({e})") from e

    manifest = parse_manifest(response.content, manifest_url)

    cache_dir.mkdir(parents=True, exist_ok=True)
    target = cache_dir / hashlib.sha1(base.encode("utf-8")).hexdigest()[:16]
    staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=cache_dir))

    try:
        (staging / MANIFEST_NAME).write_bytes(response.content)
        for name in REQUIRED_MODELS:
            filename = manifest["models"][name]["file"]
            logger.info(f"Downloading {name} weights: {filename}")
            _download(session, f"{base}/{filename}", staging / filename, timeout)

        validate_set(staging, manifest)

        if target.exists():
            shutil.rmtree(target)
        os.replace(staging, target)
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    logger.info(f"Model artifacts cached in {target}")
    return _artifacts(location, target, manifest)


def fetch_artifacts(
    location: str,
    cache_dir: str = "data/models",
    timeout: float = 30.0,
    session: Optional[requests.Session] = None,
) -> ModelArtifacts:
    """
    Fetch and validate the model set at `location`.

    Raises:
        ModelLoadError: any file missing, unreachable, unparsable or corrupt
    """
    logger.info(f"Fetching model artifacts from {location}")
    if is_remote(location):
        return _fetch_remote(location, Path(cache_dir), timeout, session)
    return _fetch_local(location)


def load_face_analyzer(
    location: str,
    cache_dir: str = "data/models",
    timeout: float = 30.0,
    conf_threshold: float = 0.5,
):
    """Fetch artifacts and build the live FaceAnalyzer from them."""
    from .detector import SCRFDDetector
    from .embedder import FaceEmbedder
    from .pipeline import FaceAnalyzer

    artifacts = fetch_artifacts(location, cache_dir=cache_dir, timeout=timeout)
    detector = SCRFDDetector(str(artifacts.detector_path), conf_threshold=conf_threshold)
    embedder = FaceEmbedder(str(artifacts.embedder_path), normalize=artifacts.normalize)
    return FaceAnalyzer(detector, embedder)
