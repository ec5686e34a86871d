"""Storage of chat groups."""

from typing import Any, List, Mapping

from pymongo import ReturnDocument

from funken import logs
from funken.models import Group
from funken.mongodb import MongoDB, NoDocumentsError


class InvalidDocumentIDError(ValueError):
    """Raised when a document identifier is not valid."""

    def __init__(self, message: str = "Document's ID is invalid") -> None:
        super().__init__(message)


class GroupRepository:
    """Reads and writes groups in their collection."""

    def __init__(self, db: MongoDB) -> None:
        self._logger = logs.bind("repository", "group_repository")
        self._coll = db.collection(Group.collection_name)

    def find_one_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> Group:
        """Return the first group matching ``filter``; raise NoDocumentsError if none does."""
        document = self._coll.find_one(filter, **kwargs)
        if document is None:
            raise NoDocumentsError()
        return Group.from_document(document)

    def find_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> List[Group]:
        """Return every group matching ``filter``."""
        cursor = self._coll.find(filter, **kwargs)
        try:
            return [Group.from_document(document) for document in cursor]
        finally:
            cursor.close()

    def create(self, group: Group) -> None:
        self._coll.insert_one(group.to_document())

    def update_by_id(self, id: str, operation: Mapping[str, Any]) -> Group:
        """Apply ``operation`` to the group with ``id`` and return it as updated."""
        document = self._coll.find_one_and_update(
            {"id": id}, operation, return_document=ReturnDocument.AFTER
        )
        if document is None:
            raise NoDocumentsError()
        return Group.from_document(document)

    def delete_by_id(self, id: str) -> None:
        self._coll.delete_one({"id": id})

    def check_exist(self, id: str) -> bool:
        """Return whether a group with ``id`` is stored."""
        return self._coll.find_one({"id": id}, projection={"id": 1}) is not None