import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, FastAPI, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, load_settings
from errors import ValidationError
from history import HistoryStore
from inference import infer, preprocess
from model_loader import ModelLoader
from schemas import (
    FailResponse,
    HistoriesResponse,
    PredictionRecord,
    PredictResponse,
    new_prediction_id,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

NO_IMAGE = "no image uploaded"
NOT_AN_IMAGE = "uploaded file is not an image"
TOO_LARGE = "payload exceeds maximum allowed size"
PREDICTION_FAILED = "error occurred while predicting"
HISTORIES_FAILED = "error occurred while fetching histories"
PREDICTED = "Model is predicted successfully"


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@dataclass
class UploadedImage:
    data: bytes
    content_type: str
    size: int
    filename: Optional[str] = None


def fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=FailResponse(message=message).model_dump())


async def read_upload(image: Optional[UploadFile], settings: Settings) -> UploadedImage:
    """Apply the upload checks in order and return the uploaded bytes."""
    # upload layer limit, checked before anything the handler looks at.
    # Starlette has already spooled the part to a temp file by this point.
    if image is not None and image.size is not None and image.size > settings.upload_limit_bytes:
        raise ValidationError(
            f"Payload content length greater than maximum allowed: {settings.upload_limit_bytes}",
            status_code=413,
        )

    if image is None or not image.filename:
        raise ValidationError(NO_IMAGE)

    content_type = image.content_type or ""
    if not content_type.startswith("image/"):
        raise ValidationError(NOT_AN_IMAGE)

    data = await image.read()
    if settings.explicit_size_check and len(data) > settings.max_upload_bytes:
        raise ValidationError(TOO_LARGE, status_code=413)

    return UploadedImage(data=data, content_type=content_type, size=len(data), filename=image.filename)


async def run_prediction(data: bytes, loader: ModelLoader, store: HistoryStore, settings: Settings) -> PredictionRecord:
    """Load -> preprocess -> infer -> persist. Raises the typed error of whichever step failed."""
    model = await loader.get()
    x = await run_in_threadpool(preprocess, data, settings.image_size)
    result, suggestion = await run_in_threadpool(infer, model, x, settings.threshold)

    record = PredictionRecord(
        id=new_prediction_id(),
        result=result,
        suggestion=suggestion,
        createdAt=utc_timestamp(),
    )
    await run_in_threadpool(store.save, record)
    return record


# ====== Routes ======
router = APIRouter()
histories_router = APIRouter()


@router.post("/predict", response_model=PredictResponse)
async def predict(request: Request, image: Optional[UploadFile] = File(None)):
    state = request.app.state
    try:
        upload = await read_upload(image, state.settings)
    except ValidationError as e:
        return fail(e.status_code, e.message)

    try:
        record = await run_prediction(upload.data, state.loader, state.store, state.settings)
    except Exception:
        logger.exception("Prediction error")
        return fail(400, PREDICTION_FAILED)

    return PredictResponse(message=PREDICTED, data=record)


@histories_router.get("/predict/histories", response_model=HistoriesResponse)
async def histories(request: Request):
    try:
        items = await run_in_threadpool(request.app.state.store.list_all)
    except Exception:
        logger.exception("Error fetching prediction histories")
        return fail(400, HISTORIES_FAILED)

    return HistoriesResponse(data=items)


def create_app(settings: Optional[Settings] = None, loader: Optional[ModelLoader] = None,
               store: Optional[HistoryStore] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting prediction service (profile %s)", settings.profile)
        app.state.settings = settings
        app.state.loader = loader or ModelLoader(settings)
        app.state.store = store or HistoryStore(settings)

        yield

        logger.info("Shutting down... unloading model")
        app.state.loader.release()

    app = FastAPI(title="Cancer Prediction API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        # an "image" field sent as plain text instead of a file
        if request.url.path == "/predict":
            return fail(400, NO_IMAGE)
        return await request_validation_exception_handler(request, exc)

    app.include_router(router)
    if settings.enable_histories:
        app.include_router(histories_router)

    return app


settings = load_settings()
setup_logging(settings.log_level)
app = create_app(settings)


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
