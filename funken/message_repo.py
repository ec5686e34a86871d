"""Storage of chat messages."""

from typing import Any, List, Mapping

from pymongo import ReturnDocument

from funken import logs
from funken.models import Message
from funken.mongodb import MongoDB, NoDocumentsError


class MessageRepository:
    """Reads and writes messages in their collection."""

    def __init__(self, db: MongoDB) -> None:
        self._logger = logs.bind("repository", "message_repository")
        self._coll = db.collection(Message.collection_name)

    def count_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> int:
        """Return how many messages match ``filter``."""
        return self._coll.count_documents(filter, **kwargs)

    def find_one_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> Message:
        """Return the first message matching ``filter``; raise NoDocumentsError if none does."""
        document = self._coll.find_one(filter, **kwargs)
        if document is None:
            raise NoDocumentsError()
        return Message.from_document(document)

    def find_by_conditions(self, filter: Mapping[str, Any], **kwargs: Any) -> List[Message]:
        """Return every message matching ``filter``."""
        cursor = self._coll.find(filter, **kwargs)
        try:
            return [Message.from_document(document) for document in cursor]
        finally:
            cursor.close()

    def create(self, msg: Message) -> None:
        self._coll.insert_one(msg.to_document())

    def update_by_id(self, id: str, operation: Mapping[str, Any]) -> Message:
        """Apply ``operation`` to the message with ``id`` and return it as updated."""
        document = self._coll.find_one_and_update(
            {"id": id}, operation, return_document=ReturnDocument.AFTER
        )
        if document is None:
            raise NoDocumentsError()
        return Message.from_document(document)

    def delete_by_id(self, id: str) -> None:
        self._coll.delete_one({"id": id})