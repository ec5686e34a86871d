"""Storage of the NG-word filters attached to chat groups."""

from typing import Any, Iterable, List, Mapping

from pymongo import ReturnDocument

from funken import logs
from funken.models import GroupNGFilter
from funken.mongodb import MongoDB, NoDocumentsError


class GroupNGFilterRepository:
    """Reads and writes group NG filters in their collection."""

    def __init__(self, db: MongoDB) -> None:
        self._logger = logs.bind("repository", "group_ng_filter_repository")
        self._coll = db.collection(GroupNGFilter.collection_name)

    def find_one_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> GroupNGFilter:
        """Return the first filter matching ``filter``; raise NoDocumentsError if none does."""
        document = self._coll.find_one(filter, **kwargs)
        if document is None:
            raise NoDocumentsError()
        return GroupNGFilter.from_document(document)

    def find_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> List[GroupNGFilter]:
        """Return every filter matching ``filter``."""
        cursor = self._coll.find(filter, **kwargs)
        try:
            return [GroupNGFilter.from_document(document) for document in cursor]
        finally:
            cursor.close()

    def create(self, ng_filter: GroupNGFilter) -> None:
        self._coll.insert_one(ng_filter.to_document())

    def create_batch(self, ng_filters: Iterable[GroupNGFilter]) -> None:
        """Insert several filters at once; at least one is required."""
        documents = [ng_filter.to_document() for ng_filter in ng_filters]
        if not documents:
            raise ValueError("must provide at least one element in input slice")
        self._coll.insert_many(documents)

    def update_by_id(self, id: str, operation: Mapping[str, Any]) -> GroupNGFilter:
        """Apply ``operation`` to the filter with ``id`` and return it as updated."""
        document = self._coll.find_one_and_update(
            {"id": id}, operation, return_document=ReturnDocument.AFTER
        )
        if document is None:
            raise NoDocumentsError()
        return GroupNGFilter.from_document(document)

    def delete_by_id(self, id: str) -> None:
        self._coll.delete_one({"id": id})

    def delete_by_group_ids(self, group_ids: Iterable[str]) -> None:
        """Delete every filter belonging to one of ``group_ids``."""
        self._coll.delete_many({"group_id": {"$in": list(group_ids)}})