import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from config import Settings
from errors import ModelUnavailable

logger = logging.getLogger(__name__)

DESCRIPTOR_NAME = "model.json"
WEIGHT_SUFFIX = ".bin"


def open_bucket(settings: Settings) -> storage.Bucket:
    client = storage.Client.from_service_account_json(str(settings.credentials_path))
    return client.bucket(settings.bucket_name)


class GraphModelHandle:
    """Frozen TF.js graph wrapped so it runs like a Keras model's predict()."""

    def __init__(self, fn):
        self._fn = fn

    def predict(self, x, verbose=0):
        import tensorflow as tf

        out = self._fn(tf.convert_to_tensor(x, dtype=tf.float32))
        if isinstance(out, dict):
            out = next(iter(out.values()))
        elif isinstance(out, (list, tuple)):
            out = out[0]
        return out.numpy()


# tensorflow is heavy, the loaders import it only when a model is actually loaded
def load_graph_model(descriptor_path: Path) -> GraphModelHandle:
    from tfjs_graph_converter import api

    graph = api.load_graph_model(str(descriptor_path))
    return GraphModelHandle(api.graph_to_function_v2(graph))


def load_layers_model(descriptor_path: Path):
    from tensorflowjs.converters import load_keras_model

    return load_keras_model(str(descriptor_path))


def read_descriptor(descriptor_path: Path) -> dict:
    try:
        with open(descriptor_path, "r", encoding="utf-8") as f:
            descriptor = json.load(f)
    except (OSError, ValueError) as e:
        raise ModelUnavailable(f"Cannot read model descriptor {descriptor_path}: {e}") from e
    if not isinstance(descriptor, dict):
        raise ModelUnavailable(f"Model descriptor {descriptor_path} is not a JSON object")
    return descriptor


def descriptor_format(descriptor: dict) -> str:
    fmt = descriptor.get("format")
    if fmt in ("graph-model", "layers-model"):
        return fmt
    # older exports carry no format field; a GraphDef topology has nodes
    topology = descriptor.get("modelTopology") or {}
    return "graph-model" if "node" in topology else "layers-model"


def load_local_model(descriptor_path: Path):
    """Load a TF.js model (model.json + .bin shards), graph or layers format."""
    loaders = {"graph-model": load_graph_model, "layers-model": load_layers_model}
    fmt = descriptor_format(read_descriptor(descriptor_path))
    logger.info("Loading %s from %s", fmt, descriptor_path)
    return loaders[fmt](descriptor_path)


def referenced_weights(descriptor_path: Path) -> Optional[List[str]]:
    """Weight file names listed in the descriptor, or None when it has no manifest."""
    descriptor = read_descriptor(descriptor_path)

    manifest = descriptor.get("weightsManifest")
    if manifest is None:
        return None

    names = []
    for group in manifest:
        for p in group.get("paths", []):
            name = p.split("/")[-1]
            if name not in names:
                names.append(name)
    return names


def _is_readable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


class ModelLoader:
    def __init__(self, settings: Settings, bucket=None, load_fn=load_local_model):
        self.settings = settings
        self.model_dir = Path(settings.model_dir)
        self._bucket = bucket
        self._load_fn = load_fn
        self._model = None
        self._lock = asyncio.Lock()

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = open_bucket(self.settings)
        return self._bucket

    @property
    def descriptor_path(self) -> Path:
        return self.model_dir / DESCRIPTOR_NAME

    def _cache_complete(self) -> bool:
        if not _is_readable(self.descriptor_path):
            return False
        try:
            weights = referenced_weights(self.descriptor_path)
        except ModelUnavailable:
            # e.g. a descriptor truncated by an interrupted download
            logger.warning("Cached descriptor %s is unreadable, fetching again", self.descriptor_path)
            return False
        if weights is None:
            return False
        return all(_is_readable(self.model_dir / name) for name in weights)

    def _download(self, blob, dest: Path):
        try:
            blob.download_to_filename(str(dest))
        except (GoogleAPIError, OSError) as e:
            raise ModelUnavailable(f"Failed to download {blob.name}: {e}") from e
        logger.info("Downloaded %s", blob.name)

    def _fetch_remote(self):
        prefix = self.settings.model_prefix
        try:
            blobs = list(self.bucket.list_blobs(prefix=prefix))
        except (GoogleAPIError, GoogleAuthError, OSError) as e:
            raise ModelUnavailable(f"Cannot list objects under {prefix!r}: {e}") from e

        descriptors = [b for b in blobs if b.name.endswith(DESCRIPTOR_NAME)]
        if not descriptors:
            raise ModelUnavailable(f"Model file not found in bucket under {prefix!r}")
        if len(descriptors) > 1:
            names = ", ".join(b.name for b in descriptors)
            raise ModelUnavailable(f"Expected one model descriptor under {prefix!r}, found: {names}")
        self._download(descriptors[0], self.descriptor_path)

        remote_weights = {b.name.split("/")[-1]: b for b in blobs if b.name.endswith(WEIGHT_SUFFIX)}
        wanted = referenced_weights(self.descriptor_path)
        if wanted is None:
            wanted = list(remote_weights)

        missing = [name for name in wanted if name not in remote_weights]
        if missing:
            raise ModelUnavailable(f"Weight files missing in bucket: {', '.join(missing)}")

        for name in wanted:
            self._download(remote_weights[name], self.model_dir / name)

        return wanted

    def ensure_model_available(self):
        """Make sure model.json and its weights are on disk, then load them."""
        try:
            self.model_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ModelUnavailable(f"Cannot create model directory {self.model_dir}: {e}") from e

        if self._cache_complete():
            logger.info("Using cached model files in %s", self.model_dir)
            weights = referenced_weights(self.descriptor_path)
        else:
            weights = self._fetch_remote()

        for path in [self.descriptor_path] + [self.model_dir / name for name in weights]:
            if not _is_readable(path):
                raise ModelUnavailable(f"Model file is not readable: {path}")
        logger.info("Model and weight files are available")

        try:
            model = self._load_fn(self.descriptor_path)
        except Exception as e:
            raise ModelUnavailable(f"Failed to load model from {self.descriptor_path}: {e}") from e
        logger.info("Model loaded successfully from %s", self.descriptor_path)
        return model

    async def get(self):
        """Shared handle; the first caller loads it, concurrent callers wait for that load."""
        if not self.settings.cache_model:
            return await run_in_threadpool(self.ensure_model_available)

        if self._model is not None:
            return self._model
        async with self._lock:
            if self._model is None:
                self._model = await run_in_threadpool(self.ensure_model_available)
        return self._model

    def release(self):
        self._model = None
