import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from relay.errors import DuplicateName, EmptyName, InvalidCode, NotFound
from relay.models import IdentityRecord, MemberRecord, MessageRecord, PushSubscription, Tier
from relay.utils import generate_code, new_id, normalize_name, normalize_phone, utc_now_iso

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
SUBSCRIPTIONS_FILE = "subscriptions.json"
MESSAGES_FILE = "messages.json"
# Key file written by earlier deployments, before keys moved into config.json
LEGACY_VAPID_FILE = "vapid.json"

GROUP_CODE_PREFIX = "BABA"
ADMIN_CODE_PREFIX = "ADMIN"

MESSAGE_LOG_LIMIT = 50

# Sentinel for "field not provided" in partial updates
UNSET: Any = object()


class JsonDocument:
    """
    One JSON file holding a whole collection.

    Reads return the default when the file does not exist yet; writes replace
    the file atomically so a crash never leaves half a document behind.
    """

    def __init__(self, path: Path, default: Callable[[], Any]):
        self.path = Path(path)
        self._default = default

    def load(self) -> Any:
        if not self.path.exists():
            return self._default()
        with self.path.open("r", encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, data: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            os.unlink(tmp_name)
            raise


# =============================================================================
# Identity Store
# =============================================================================

class IdentityStore:
    """Group code, admin code and the VAPID key pair for this deployment."""

    def __init__(self, data_dir: Path, key_factory: Callable[[], Tuple[str, str]]):
        self._doc = JsonDocument(Path(data_dir) / CONFIG_FILE, dict)
        self._legacy_keys = JsonDocument(Path(data_dir) / LEGACY_VAPID_FILE, dict)
        self._key_factory = key_factory
        self._lock = threading.RLock()
        self._record: Optional[IdentityRecord] = None

    def get_or_create(self) -> IdentityRecord:
        """
        Return the identity record, creating and persisting it on first call.

        A config written without VAPID keys keeps its codes and takes the
        pair from vapid.json when present, so existing browser subscriptions
        keep working; otherwise a fresh pair is generated.
        """
        with self._lock:
            if self._record is not None:
                return self._record

            data = self._doc.load()
            changed = False
            if not data.get("groupCode") or not data.get("adminCode"):
                logger.info("No identity found, generating group and admin codes")
                data["groupCode"] = generate_code(GROUP_CODE_PREFIX, 6)
                data["adminCode"] = generate_code(ADMIN_CODE_PREFIX, 8)
                changed = True
            if not data.get("vapidPublicKey") or not data.get("vapidPrivateKey"):
                legacy = self._legacy_keys.load()
                if legacy.get("publicKey") and legacy.get("privateKey"):
                    logger.info(f"Importing VAPID keys from {LEGACY_VAPID_FILE}")
                    data["vapidPublicKey"], data["vapidPrivateKey"] = legacy["publicKey"], legacy["privateKey"]
                else:
                    logger.info("No VAPID keys found, generating a new key pair")
                    data["vapidPublicKey"], data["vapidPrivateKey"] = self._key_factory()
                changed = True

            self._record = IdentityRecord.model_validate(data)
            if changed:
                self._doc.save(self._record.to_document())
            return self._record

    def is_persisted(self) -> bool:
        return self._doc.path.exists()

    def verify(self, code: Optional[str]) -> Optional[Tier]:
        """Tier granted by `code`, or None if it matches neither stored code."""
        return self.get_or_create().tier_for(code)


# =============================================================================
# Roster Store
# =============================================================================

class RosterStore:
    """Group members keyed by id, in join order."""

    def __init__(self, data_dir: Path, identity: IdentityStore):
        self._doc = JsonDocument(Path(data_dir) / SUBSCRIPTIONS_FILE, dict)
        self._identity = identity
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, MemberRecord]:
        raw = self._doc.load()
        return {member_id: MemberRecord.model_validate(entry) for member_id, entry in raw.items()}

    def _save(self, members: Dict[str, MemberRecord]) -> None:
        self._doc.save({member_id: member.to_document() for member_id, member in members.items()})

    @staticmethod
    def _name_taken(members: Dict[str, MemberRecord], name: str, exclude_id: Optional[str] = None) -> bool:
        wanted = normalize_name(name)
        return any(
            normalize_name(member.name) == wanted
            for member_id, member in members.items()
            if member_id != exclude_id
        )

    def list(self) -> List[Tuple[str, MemberRecord]]:
        with self._lock:
            return list(self._load().items())

    def is_name_unique(self, name: str, exclude_id: Optional[str] = None) -> bool:
        with self._lock:
            return not self._name_taken(self._load(), name, exclude_id)

    def add(
        self,
        name: Optional[str],
        push_subscription: Optional[PushSubscription] = None,
        phone: Optional[str] = None,
        is_admin: bool = False,
    ) -> Tuple[str, MemberRecord]:
        """
        Add a member.

        Raises:
            EmptyName: name is blank after trimming
            DuplicateName: another member already uses this name
        """
        if not name or not name.strip():
            raise EmptyName()

        with self._lock:
            members = self._load()
            if self._name_taken(members, name):
                raise DuplicateName()

            member_id = new_id(members)
            member = MemberRecord(
                name=name.strip(),
                push_subscription=push_subscription or None,
                phone=normalize_phone(phone),
                joined_at=utc_now_iso(),
                is_admin=is_admin,
            )
            members[member_id] = member
            self._save(members)

        logger.info(f"Member added: id={member_id}, name={member.name}, sms={member.has_phone}")
        return member_id, member

    def update(self, member_id: str, name: Any = UNSET, phone: Any = UNSET, is_admin: Any = UNSET) -> MemberRecord:
        """
        Apply a partial update. Fields left as UNSET are untouched; a blank
        name is ignored and a blank phone clears the stored number.

        Raises:
            NotFound: no member with this id
            DuplicateName: the new name belongs to a different member
        """
        with self._lock:
            members = self._load()
            member = members.get(member_id)
            if member is None:
                raise NotFound()

            changes: Dict[str, Any] = {}
            if name is not UNSET and name and name.strip():
                if self._name_taken(members, name, exclude_id=member_id):
                    raise DuplicateName()
                changes["name"] = name.strip()
            if phone is not UNSET:
                changes["phone"] = normalize_phone(phone)
            if is_admin is not UNSET and is_admin is not None:
                changes["is_admin"] = bool(is_admin)

            member = member.model_copy(update=changes)
            members[member_id] = member
            self._save(members)

        logger.info(f"Member updated: id={member_id}, fields={sorted(changes)}")
        return member

    def remove(self, member_id: str) -> MemberRecord:
        """
        Raises:
            NotFound: no member with this id
        """
        with self._lock:
            members = self._load()
            member = members.pop(member_id, None)
            if member is None:
                raise NotFound()
            self._save(members)

        logger.info(f"Member removed: id={member_id}, name={member.name}")
        return member

    def remove_many(self, member_ids: Iterable[str]) -> int:
        """Delete every listed member that still exists. Returns how many went."""
        with self._lock:
            members = self._load()
            removed = [member_id for member_id in member_ids if members.pop(member_id, None) is not None]
            if removed:
                self._save(members)
        return len(removed)

    def clear_push_endpoint(self, member_id: str) -> None:
        self.clear_push_endpoints([member_id])

    def clear_push_endpoints(self, member_ids: Iterable[str]) -> int:
        """Drop the push subscription of each listed member, keeping the member."""
        with self._lock:
            members = self._load()
            cleared = 0
            for member_id in member_ids:
                member = members.get(member_id)
                if member is not None and member.push_subscription is not None:
                    members[member_id] = member.model_copy(update={"push_subscription": None})
                    cleared += 1
            if cleared:
                self._save(members)
        return cleared

    def login(self, name: Optional[str], code: Optional[str]) -> Tuple[str, MemberRecord]:
        """
        Look up an existing member by name. Never creates a record.

        Raises:
            InvalidCode: code is neither the group nor the admin code
            NotFound: nobody by that name
        """
        if self._identity.verify(code) is None:
            raise InvalidCode()

        wanted = normalize_name(name)
        with self._lock:
            for member_id, member in self._load().items():
                if normalize_name(member.name) == wanted:
                    return member_id, member

        raise NotFound("Member not found. Please join first or check your name.")


# =============================================================================
# Message Log
# =============================================================================

class MessageLog:
    """Broadcast history, newest first, capped at MESSAGE_LOG_LIMIT entries."""

    def __init__(self, data_dir: Path, limit: int = MESSAGE_LOG_LIMIT):
        self._doc = JsonDocument(Path(data_dir) / MESSAGES_FILE, list)
        self._limit = limit
        self._lock = threading.RLock()

    def append(self, text: str, sender: Optional[str] = None) -> MessageRecord:
        with self._lock:
            messages = self._doc.load()
            record = MessageRecord(
                id=new_id({entry.get("id") for entry in messages}),
                text=text,
                sender=sender or "Admin",
                sent_at=utc_now_iso(),
            )
            messages.insert(0, record.to_document())
            del messages[self._limit:]
            self._doc.save(messages)

        logger.info(f"Message logged: id={record.id}, sender={record.sender}")
        return record

    def recent(self) -> List[MessageRecord]:
        with self._lock:
            messages = self._doc.load()
        return [MessageRecord.model_validate(entry) for entry in messages[:self._limit]]
