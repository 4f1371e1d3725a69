import logging
from typing import List

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import firestore

from config import Settings
from errors import PersistenceError
from schemas import HistoryItem, PredictionRecord

logger = logging.getLogger(__name__)


def open_collection(settings: Settings) -> firestore.CollectionReference:
    client = firestore.Client.from_service_account_json(str(settings.credentials_path))
    return client.collection(settings.collection_name)


class HistoryStore:
    """Prediction history kept in one Firestore collection, one document per prediction."""

    def __init__(self, settings: Settings, collection=None):
        self.settings = settings
        self._collection = collection

    @property
    def collection(self):
        if self._collection is None:
            self._collection = open_collection(self.settings)
        return self._collection

    def save(self, record: PredictionRecord):
        try:
            self.collection.document(record.id).set(record.model_dump())
        except (GoogleAPIError, GoogleAuthError, OSError) as e:
            raise PersistenceError(f"Could not save prediction {record.id}: {e}") from e
        logger.info("Saved prediction %s (%s)", record.id, record.result)

    def list_all(self) -> List[HistoryItem]:
        try:
            return [HistoryItem(id=doc.id, history=doc.to_dict() or {}) for doc in self.collection.stream()]
        except (GoogleAPIError, GoogleAuthError, OSError) as e:
            raise PersistenceError(f"Could not fetch prediction histories: {e}") from e
