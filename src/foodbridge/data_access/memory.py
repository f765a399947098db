import copy
import logging
import threading
import uuid

from foodbridge.core.exceptions import ConditionFailed, StoreError
from foodbridge.services.lifecycle import WritePlan

logger = logging.getLogger(__name__)

class InMemoryDonationStore:
    """
    Process-local document store with the same conditional-write contract
    as the DynamoDB store. Every check-and-write happens under one lock.
    """
    def __init__(self):
        self._documents: dict[str, dict] = {}
        self._lock = threading.Lock()

    def new_id(self) -> str:
        return str(uuid.uuid4())

    def put_new(self, document: dict) -> dict:
        donation_id = document["donation_id"]
        with self._lock:
            if donation_id in self._documents:
                raise StoreError(f"Donation {donation_id} already exists.", donation_id=donation_id)
            self._documents[donation_id] = copy.deepcopy(document)
            return copy.deepcopy(document)

    def get(self, donation_id: str) -> dict | None:
        with self._lock:
            document = self._documents.get(donation_id)
            return copy.deepcopy(document) if document is not None else None

    def conditional_update(self, donation_id: str, plan: WritePlan) -> dict:
        with self._lock:
            current = self._documents.get(donation_id)
            if not plan.allows(current):
                raise ConditionFailed(copy.deepcopy(current))
            current.update(copy.deepcopy(plan.updates))
            for field, step in plan.increments.items():
                current[field] = (current.get(field) or 0) + step
            return copy.deepcopy(current)

    def conditional_delete(self, donation_id: str, plan: WritePlan) -> dict:
        with self._lock:
            current = self._documents.get(donation_id)
            if not plan.allows(current):
                raise ConditionFailed(copy.deepcopy(current))
            logger.debug(f"Removing donation {donation_id} from memory store")
            return self._documents.pop(donation_id)

    def list_all(self) -> list[dict]:
        with self._lock:
            documents = [copy.deepcopy(doc) for doc in self._documents.values()]
        return sorted(documents, key=lambda doc: doc["created_at"], reverse=True)
