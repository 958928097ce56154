import os
import re
import copy
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple
from pymongo import MongoClient, ReturnDocument, DESCENDING
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError, PyMongoError
from dotenv import load_dotenv

from services.errors import InternalError

load_dotenv()

logger = logging.getLogger(__name__)

TRACKING_ID_FIELD = "paymentDetails.orderTrackingId"
IPN_LOG_FIELD = "paymentDetails.ipn"


class StoreUnavailableError(InternalError):
    """Raised when the booking document store cannot be reached"""
    code = "store_unavailable"


class DuplicateBookingError(InternalError):
    """Raised when a bookingId is already taken"""
    code = "duplicate_booking"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_path(doc: Dict[str, Any], path: str, value: Any):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    target: Any = doc
    for part in path.split("."):
        if not isinstance(target, dict):
            return None
        target = target.get(part)
    return target


class InMemoryBookingStore:
    """Booking store with in-memory storage, used for local runs and tests"""

    def __init__(self):
        # booking_id -> booking document
        self.bookings: Dict[str, Dict[str, Any]] = {}

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        booking_id = doc["bookingId"]
        if booking_id in self.bookings:
            raise DuplicateBookingError(f"Duplicate bookingId {booking_id}")
        stored = copy.deepcopy(doc)
        stored.setdefault("createdAt", _now())
        stored["updatedAt"] = stored["createdAt"]
        self.bookings[booking_id] = stored
        return copy.deepcopy(stored)

    async def get(self, booking_id: str) -> Optional[Dict[str, Any]]:
        doc = self.bookings.get(booking_id)
        return copy.deepcopy(doc) if doc else None

    async def find_by_tracking_id(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        for doc in self.bookings.values():
            if _get_path(doc, TRACKING_ID_FIELD) == tracking_id:
                return copy.deepcopy(doc)
        return None

    async def find(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        customer_email: Optional[str] = None,
        skip: int = 0,
        limit: int = 30,
    ) -> Tuple[List[Dict[str, Any]], int]:
        matches = []
        for doc in self.bookings.values():
            if status and doc.get("status") != status:
                continue
            if customer_email and doc.get("customerEmail") != customer_email:
                continue
            if search and search.lower() not in doc.get("bookingId", "").lower():
                continue
            matches.append(doc)
        matches.sort(key=lambda d: d.get("createdAt") or "", reverse=True)
        page = matches[skip:skip + limit]
        return [copy.deepcopy(d) for d in page], len(matches)

    async def update(
        self,
        booking_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Set fields (dotted paths allowed) in one step.

        Returns None when the booking is missing or its status no longer
        matches expected_status.
        """
        doc = self.bookings.get(booking_id)
        if doc is None:
            return None
        if expected_status is not None and doc.get("status") != expected_status:
            return None
        for path, value in fields.items():
            _set_path(doc, path, copy.deepcopy(value))
        doc["updatedAt"] = _now()
        return copy.deepcopy(doc)

    async def append_ipn(self, booking_id: str, entry: Dict[str, Any]) -> bool:
        """Append to the notification log unless the same fingerprint is already there"""
        doc = self.bookings.get(booking_id)
        if doc is None:
            return False
        log = _get_path(doc, IPN_LOG_FIELD)
        if not isinstance(log, list):
            log = []
            _set_path(doc, IPN_LOG_FIELD, log)
        if any(item.get("fingerprint") == entry.get("fingerprint") for item in log):
            return False
        log.append(copy.deepcopy(entry))
        return True


class MongoBookingStore:
    """MongoDB-backed booking store"""

    def __init__(self, mongo_url: Optional[str] = None, db_name: Optional[str] = None):
        self.mongo_url = mongo_url or os.getenv("MONGODB_URL", "mongodb://localhost:27017")
        self.db_name = db_name or os.getenv("MONGODB_DB_NAME", "bookings")
        self.client: Optional[MongoClient] = None
        self.collection = None
        self._connect()

    def _connect(self):
        """Connect to MongoDB - raises error if connection fails"""
        try:
            self.client = MongoClient(
                self.mongo_url,
                serverSelectionTimeoutMS=2000,
                connectTimeoutMS=2000,
                tz_aware=True,
            )
            self.client.admin.command("ping")

            self.collection = self.client[self.db_name]["bookings"]
            self.collection.create_index("bookingId", unique=True)
            self.collection.create_index("customerEmail")
            self.collection.create_index("status")
            self.collection.create_index(TRACKING_ID_FIELD)
            logger.info("MongoDB booking store connected (%s)", self.db_name)

        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            raise StoreUnavailableError(f"MongoDB booking store is unavailable: {e}") from e

    async def _run(self, fn, *args):
        # pymongo is synchronous
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            raise StoreUnavailableError(f"MongoDB connection lost during operation: {e}") from e
        except DuplicateKeyError as e:
            raise DuplicateBookingError(f"Duplicate booking: {e}") from e
        except PyMongoError as e:
            raise InternalError(f"Booking store error: {e}") from e

    def _insert_doc(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(doc)
        stored.setdefault("createdAt", _now())
        stored["updatedAt"] = stored["createdAt"]
        self.collection.insert_one(stored)
        stored.pop("_id", None)
        return stored

    def _find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.collection.find_one(query, {"_id": 0})

    def _find_many(self, query: Dict[str, Any], skip: int, limit: int):
        cursor = (
            self.collection.find(query, {"_id": 0})
            .sort("createdAt", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents(query)

    def _update_doc(self, query: Dict[str, Any], update: Dict[str, Any]):
        return self.collection.find_one_and_update(
            query, update, projection={"_id": 0}, return_document=ReturnDocument.AFTER
        )

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(self._insert_doc, doc)

    async def get(self, booking_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._find_one, {"bookingId": booking_id})

    async def find_by_tracking_id(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._find_one, {TRACKING_ID_FIELD: tracking_id})

    async def find(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        customer_email: Optional[str] = None,
        skip: int = 0,
        limit: int = 30,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if customer_email:
            query["customerEmail"] = customer_email
        if search:
            query["bookingId"] = {"$regex": re.escape(search), "$options": "i"}
        return await self._run(self._find_many, query, skip, limit)

    async def update(
        self,
        booking_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {"bookingId": booking_id}
        if expected_status is not None:
            query["status"] = expected_status
        update = {"$set": {**fields, "updatedAt": _now()}}
        return await self._run(self._update_doc, query, update)

    async def append_ipn(self, booking_id: str, entry: Dict[str, Any]) -> bool:
        query = {
            "bookingId": booking_id,
            f"{IPN_LOG_FIELD}.fingerprint": {"$ne": entry.get("fingerprint")},
        }
        updated = await self._run(self._update_doc, query, {"$push": {IPN_LOG_FIELD: entry}})
        return updated is not None


def build_booking_store():
    """Pick the store implementation from BOOKING_STORE (mongo|memory)"""
    kind = os.getenv("BOOKING_STORE", "mongo").lower()
    if kind == "memory":
        logger.warning("Using in-memory booking store; bookings are lost on restart")
        return InMemoryBookingStore()
    return MongoBookingStore()
