from pathlib import Path

import pytest

from config import SERVICE_DIR, load_settings


def test_defaults_use_v1_profile():
    settings = load_settings({})

    assert settings.port == 8080
    assert settings.profile == "v1"
    assert settings.upload_limit_bytes == 1_000_000
    assert settings.max_upload_bytes == 1_000_000
    assert settings.explicit_size_check is True
    assert settings.enable_histories is True
    assert settings.cache_model is True
    assert settings.model_prefix == "model/"
    assert settings.collection_name == "predictions"
    assert settings.model_dir == SERVICE_DIR / "model"


def test_v2_profile():
    settings = load_settings({"PREDICT_PROFILE": "v2"})

    assert settings.upload_limit_bytes == 5_000_000
    assert settings.explicit_size_check is False
    assert settings.enable_histories is False


def test_env_overrides():
    settings = load_settings({
        "PORT": "9000",
        "MODEL_BUCKET": "my-bucket",
        "MODEL_DIR": "/tmp/models",
        "GOOGLE_CREDENTIALS_FILE": "keys/sa.json",
        "ENABLE_HISTORIES": "false",
        "MODEL_CACHE": "0",
        "LOG_LEVEL": "debug",
    })

    assert settings.port == 9000
    assert settings.bucket_name == "my-bucket"
    assert settings.model_dir == Path("/tmp/models")
    assert settings.credentials_path == SERVICE_DIR / "keys" / "sa.json"
    assert settings.enable_histories is False
    assert settings.cache_model is False
    assert settings.log_level == "DEBUG"


def test_invalid_port():
    with pytest.raises(ValueError, match="PORT"):
        load_settings({"PORT": "eighty"})


def test_unknown_profile():
    with pytest.raises(ValueError, match="PREDICT_PROFILE"):
        load_settings({"PREDICT_PROFILE": "v3"})


def test_service_modules_are_not_installed():
    tomllib = pytest.importorskip("tomllib")
    with open(SERVICE_DIR.parent / "pyproject.toml", "rb") as f:
        project = tomllib.load(f)

    setuptools_cfg = project["tool"]["setuptools"]
    assert setuptools_cfg["py-modules"] == []
    assert setuptools_cfg["packages"] == []
    assert "predict_service" in project["tool"]["pytest"]["ini_options"]["pythonpath"]
