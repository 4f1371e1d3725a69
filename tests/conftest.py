import json
from io import BytesIO

import numpy as np
import pytest
from fastapi.testclient import TestClient
from google.api_core.exceptions import ServiceUnavailable
from PIL import Image

from config import Settings
from history import HistoryStore
from main import create_app
from model_loader import ModelLoader

WEIGHT_NAME = "group1-shard1of1.bin"


# ============================================================================
# FAKES
# ============================================================================

class FakeModel:
    def __init__(self, score=0.9):
        self.score = score
        self.calls = 0

    def predict(self, x, verbose=0):
        self.calls += 1
        return np.array([[self.score]], dtype=np.float32)


class FakeBlob:
    def __init__(self, name, content=b"", error=None):
        self.name = name
        self.content = content
        self.error = error

    def download_to_filename(self, filename):
        if self.error is not None:
            raise self.error
        with open(filename, "wb") as f:
            f.write(self.content)


class FakeBucket:
    def __init__(self, blobs):
        self.blobs = blobs
        self.list_calls = 0

    def list_blobs(self, prefix=None):
        self.list_calls += 1
        return [b for b in self.blobs if prefix is None or b.name.startswith(prefix)]


class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data

    def to_dict(self):
        return dict(self._data)


class FakeDocument:
    def __init__(self, collection, doc_id):
        self.collection = collection
        self.id = doc_id

    def set(self, data):
        if self.collection.down:
            raise ServiceUnavailable("firestore is down")
        self.collection.docs[self.id] = dict(data)


class FakeCollection:
    def __init__(self, down=False):
        self.docs = {}
        self.down = down

    def document(self, doc_id):
        return FakeDocument(self, doc_id)

    def stream(self):
        if self.down:
            raise ServiceUnavailable("firestore is down")
        for doc_id, data in self.docs.items():
            yield FakeSnapshot(doc_id, data)


def make_descriptor(paths=(WEIGHT_NAME,)):
    return json.dumps({
        "format": "layers-model",
        "modelTopology": {},
        "weightsManifest": [{"paths": list(paths), "weights": []}],
    }).encode()


def model_blobs(prefix="model/"):
    return [
        FakeBlob(prefix + "model.json", make_descriptor()),
        FakeBlob(prefix + WEIGHT_NAME, b"\x00" * 16),
    ]


def image_bytes(fmt="PNG", size=(300, 200), mode="RGB", noise=False):
    if noise:
        rng = np.random.default_rng(0)
        img = Image.fromarray(rng.integers(0, 256, (size[1], size[0], 3), dtype=np.uint8))
    else:
        img = Image.new(mode, size, color=(200, 50, 50) if mode == "RGB" else 128)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def settings(tmp_path):
    return Settings(model_dir=tmp_path / "model")


@pytest.fixture
def fake_model():
    return FakeModel(score=0.9)


@pytest.fixture
def bucket():
    return FakeBucket(model_blobs())


@pytest.fixture
def loader(settings, bucket, fake_model):
    return ModelLoader(settings, bucket=bucket, load_fn=lambda path: fake_model)


@pytest.fixture
def collection():
    return FakeCollection()


@pytest.fixture
def store(settings, collection):
    return HistoryStore(settings, collection=collection)


@pytest.fixture
def make_client(loader, store):
    """Build a TestClient for the given settings with the fake loader and store."""
    clients = []

    def _make(settings, loader=loader, store=store):
        client = TestClient(create_app(settings, loader=loader, store=store))
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, settings):
    return make_client(settings)


@pytest.fixture
def png_bytes():
    return image_bytes()
