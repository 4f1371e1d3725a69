import logging
from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from errors import DecodeError, InferenceError
from schemas import CANCER, NON_CANCER

logger = logging.getLogger(__name__)

# ====== CONFIG ======
INPUT_SIZE = 224
THRESHOLD = 0.5

SUGGESTIONS = {
    CANCER: "see a doctor immediately",
    NON_CANCER: "no cancer detected",
}


def preprocess(image_bytes: bytes, size: int = INPUT_SIZE) -> np.ndarray:
    """Decode an uploaded image into a (1, size, size, 3) float32 batch in [0, 1]."""
    try:
        img = Image.open(BytesIO(image_bytes))
        img = img.convert("RGB")
        # cover fit: scale and centre-crop to a square
        img = ImageOps.fit(img, (size, size), method=Image.Resampling.LANCZOS)

        # re-encode as JPEG so the model always sees a canonical 3-channel image
        buf = BytesIO()
        img.save(buf, format="JPEG")
        buf.seek(0)
        img = Image.open(buf).convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Cannot decode uploaded image: {e}") from e

    arr = np.asarray(img).astype(np.float32) / 255.0
    return np.expand_dims(arr, axis=0)


def classify(score: float, threshold: float = THRESHOLD) -> Tuple[str, str]:
    label = CANCER if score > threshold else NON_CANCER
    return label, SUGGESTIONS[label]


def forward_score(model, x: np.ndarray) -> float:
    try:
        y = np.squeeze(model.predict(x, verbose=0))
    except Exception as e:
        raise InferenceError(f"Forward pass failed: {e}") from e

    y_flat = np.array(y).flatten()
    if y_flat.size == 0:
        raise InferenceError("Model returned an empty output")
    return float(y_flat[0])


def infer(model, x: np.ndarray, threshold: float = THRESHOLD) -> Tuple[str, str]:
    score = forward_score(model, x)
    label, suggestion = classify(score, threshold)
    logger.debug("score=%.4f label=%s", score, label)
    return label, suggestion
