"""Versioned single-record store: the read / compare-and-set surface the updater talks to."""

import abc
import logging
from collections import namedtuple

import pymongo
from bson.errors import BSONError
from bson.int64 import Int64
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

Snapshot = namedtuple("Snapshot", ["quantity", "version"])

# encoding failures (e.g. an int outside int64) never reach the driver as PyMongoError
DRIVER_ERRORS = (PyMongoError, BSONError, OverflowError)


class StoreAccessError(Exception):
    """Infrastructure failure talking to the store (connection, timeout, bad response)."""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class VersionedStore(abc.ABC):

    @abc.abstractmethod
    def read(self, item_id):
        """Return a Snapshot, or None when the record does not exist."""

    @abc.abstractmethod
    def compare_and_set(self, item_id, new_quantity, expected_version):
        """Write new_quantity and bump version only if version == expected_version.

        Returns 1 when the write landed, 0 when another writer advanced the
        version first or the record is gone.
        """


class MongoVersionedStore(VersionedStore):
    def __init__(self, coll, key_field="item_id", timeout=None):
        self.coll = coll
        self.key_field = key_field
        self.timeout = timeout

    def _deadline(self):
        # pymongo.timeout(None) leaves the client's own settings in force
        return pymongo.timeout(self.timeout)

  #----------- Provisioning------------

    def create_item(self, item_id, quantity):
        if quantity < 0:
            raise ValueError(f"quantity must be >= 0, got {quantity}")
        try:
            with self._deadline():
                self.coll.insert_one({
                    self.key_field: item_id,
                    "quantity": Int64(quantity),
                    "version": Int64(0),
                })
        except DRIVER_ERRORS as e:
            raise StoreAccessError(f"insert of {item_id!r} failed", e) from e

  #----------- Read------------

    def read(self, item_id):
        try:
            with self._deadline():
                doc = self.coll.find_one(
                    {self.key_field: item_id},
                    {"_id": 0, "quantity": 1, "version": 1},
                )
        except DRIVER_ERRORS as e:
            logger.error("read of %r failed: %s", item_id, e)
            raise StoreAccessError(f"read of {item_id!r} failed", e) from e

        if doc is None:
            return None
        quantity, version = doc.get("quantity"), doc.get("version")
        if not _is_int(quantity) or not _is_int(version):
            raise StoreAccessError(f"malformed record {item_id!r}: {doc!r}")
        return Snapshot(int(quantity), int(version))

  #----------- Compare-and-set------------

    def compare_and_set(self, item_id, new_quantity, expected_version):
        filter_doc = {self.key_field: item_id, "version": Int64(expected_version)}
        update_doc = {
            "$set": {"quantity": Int64(new_quantity)},
            "$inc": {"version": Int64(1)},
        }
        try:
            with self._deadline():
                result = self.coll.update_one(filter_doc, update_doc)
        except DRIVER_ERRORS as e:
            # outcome of the write is unknown here
            logger.error("compare-and-set on %r failed: %s", item_id, e)
            raise StoreAccessError(f"compare-and-set on {item_id!r} failed", e) from e
        return result.modified_count


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)
