"""Storage of group memberships."""

import uuid
from datetime import datetime, timezone
from typing import Iterable, List

from funken import logs
from funken.models import MemberGroup
from funken.mongodb import MongoDB


class MemberGroupRepository:
    """Reads and writes the links between members and groups."""

    def __init__(self, db: MongoDB) -> None:
        self._logger = logs.bind("repository", "member_group_repo")
        self._coll = db.collection(MemberGroup.collection_name)

    def find_member_ids_by_group_id(self, group_id: str) -> List[str]:
        """Return the identifiers of every member of ``group_id``."""
        cursor = self._coll.find({"group_id": group_id})
        try:
            return [MemberGroup.from_document(document).member_id for document in cursor]
        finally:
            cursor.close()

    def count_members_by_group_id(self, group_id: str) -> int:
        """Return how many members ``group_id`` has."""
        return self._coll.count_documents({"group_id": group_id})

    def add_members(self, group_id: str, member_ids: Iterable[str]) -> None:
        """Add to ``group_id`` every member in ``member_ids`` that is not already in it."""
        member_ids = list(member_ids)
        cursor = self._coll.find({"group_id": group_id, "member_id": {"$in": member_ids}})
        try:
            existing = {MemberGroup.from_document(document).member_id for document in cursor}
        finally:
            cursor.close()

        now = datetime.now(timezone.utc)
        new_members = [
            MemberGroup(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                member_id=member_id,
                group_id=group_id,
            ).to_document()
            for member_id in member_ids
            if member_id not in existing
        ]
        if not new_members:
            return
        self._coll.insert_many(new_members)

    def remove_members(self, group_id: str, member_ids: Iterable[str]) -> None:
        """Remove the members in ``member_ids`` from ``group_id``."""
        self._coll.delete_many({"group_id": group_id, "member_id": {"$in": list(member_ids)}})