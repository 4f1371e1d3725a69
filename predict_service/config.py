import os
from dataclasses import dataclass
from pathlib import Path

SERVICE_DIR = Path(__file__).resolve().parent

# ====== Revision profiles ======
# v1: 1MB upload limit, explicit size check, histories endpoint.
#     Both limits are 1MB, so an oversized v1 upload is answered by the upload
#     layer; the explicit check only fires when MAX_UPLOAD_BYTES is set lower.
# v2: 5MB upload limit enforced by the upload layer only, no histories
PROFILES = {
    "v1": {"upload_limit_bytes": 1_000_000, "explicit_size_check": True, "enable_histories": True},
    "v2": {"upload_limit_bytes": 5_000_000, "explicit_size_check": False, "enable_histories": False},
}


@dataclass(frozen=True)
class Settings:
    port: int = 8080
    profile: str = "v1"
    credentials_path: Path = SERVICE_DIR / "service-account.json"
    bucket_name: str = "cancer-classifier-models"
    model_prefix: str = "model/"
    model_dir: Path = SERVICE_DIR / "model"
    collection_name: str = "predictions"
    upload_limit_bytes: int = 1_000_000
    max_upload_bytes: int = 1_000_000
    explicit_size_check: bool = True
    enable_histories: bool = True
    cache_model: bool = True
    image_size: int = 224
    threshold: float = 0.5
    log_level: str = "INFO"


def _env_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _resolve(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = SERVICE_DIR / path
    return path


def load_settings(env=None) -> Settings:
    """Build the settings once at startup from environment variables."""
    env = os.environ if env is None else env

    profile = env.get("PREDICT_PROFILE", "v1").strip().lower()
    if profile not in PROFILES:
        raise ValueError(f"Unknown PREDICT_PROFILE {profile!r}, expected one of {sorted(PROFILES)}")
    defaults = PROFILES[profile]

    return Settings(
        port=_env_int(env, "PORT", 8080),
        profile=profile,
        credentials_path=_resolve(env.get("GOOGLE_CREDENTIALS_FILE", "service-account.json")),
        bucket_name=env.get("MODEL_BUCKET", "cancer-classifier-models"),
        model_prefix=env.get("MODEL_PREFIX", "model/"),
        model_dir=_resolve(env.get("MODEL_DIR", "model")),
        collection_name=env.get("PREDICTIONS_COLLECTION", "predictions"),
        upload_limit_bytes=_env_int(env, "UPLOAD_LIMIT_BYTES", defaults["upload_limit_bytes"]),
        max_upload_bytes=_env_int(env, "MAX_UPLOAD_BYTES", 1_000_000),
        explicit_size_check=defaults["explicit_size_check"],
        enable_histories=_env_bool(env, "ENABLE_HISTORIES", defaults["enable_histories"]),
        cache_model=_env_bool(env, "MODEL_CACHE", True),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
