"""
Tests for the JSON-file stores and helpers.

Tests cover:
- Identity generation, persistence and code verification
- Roster add/update/remove/login and name uniqueness
- Phone normalization
- Message log ordering and capacity
"""

import json
import re
import threading

import pytest

from relay.errors import DuplicateName, EmptyName, InvalidCode, NotFound
from relay.models import Tier
from relay.storage import UNSET, IdentityStore, MessageLog, RosterStore
from relay.utils import codes_match, generate_code, normalize_phone


def fake_keys():
    return ("public-key", "private-key")


@pytest.fixture
def identity(tmp_path):
    return IdentityStore(tmp_path, key_factory=fake_keys)


@pytest.fixture
def roster(tmp_path, identity):
    return RosterStore(tmp_path, identity)


class TestIdentityStore:
    """Test identity creation and verification."""

    def test_first_boot_creates_config(self, tmp_path, identity):
        record = identity.get_or_create()

        assert re.fullmatch(r"BABA-[A-HJ-NP-Z2-9]{6}", record.group_code)
        assert re.fullmatch(r"ADMIN-[A-HJ-NP-Z2-9]{8}", record.admin_code)
        assert record.vapid_public_key == "public-key"
        on_disk = json.loads((tmp_path / "config.json").read_text())
        assert on_disk["groupCode"] == record.group_code
        assert on_disk["adminCode"] == record.admin_code
        assert on_disk["vapidPrivateKey"] == "private-key"

    def test_codes_stable_across_boots(self, tmp_path, identity):
        first = identity.get_or_create()

        second = IdentityStore(tmp_path, key_factory=lambda: ("other", "other")).get_or_create()

        assert second == first

    def test_deleted_config_regenerates(self, tmp_path, identity):
        first = identity.get_or_create()
        (tmp_path / "config.json").unlink()

        second = IdentityStore(tmp_path, key_factory=fake_keys).get_or_create()

        assert second.admin_code != first.admin_code or second.group_code != first.group_code

    def test_config_without_keys_gains_keys(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"groupCode": "BABA-AAAAAA", "adminCode": "ADMIN-BBBBBBBB"}))

        record = IdentityStore(tmp_path, key_factory=fake_keys).get_or_create()

        assert record.group_code == "BABA-AAAAAA"
        assert record.vapid_public_key == "public-key"
        assert json.loads((tmp_path / "config.json").read_text())["vapidPublicKey"] == "public-key"

    def test_keys_imported_from_legacy_file(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"groupCode": "BABA-AAAAAA", "adminCode": "ADMIN-BBBBBBBB"}))
        (tmp_path / "vapid.json").write_text(json.dumps({"publicKey": "legacy-pub", "privateKey": "legacy-priv"}))

        record = IdentityStore(tmp_path, key_factory=fake_keys).get_or_create()

        assert (record.vapid_public_key, record.vapid_private_key) == ("legacy-pub", "legacy-priv")
        on_disk = json.loads((tmp_path / "config.json").read_text())
        assert on_disk["vapidPublicKey"] == "legacy-pub"
        assert on_disk["vapidPrivateKey"] == "legacy-priv"

    def test_incomplete_legacy_file_ignored(self, tmp_path):
        (tmp_path / "vapid.json").write_text(json.dumps({"publicKey": "legacy-pub"}))

        record = IdentityStore(tmp_path, key_factory=fake_keys).get_or_create()

        assert record.vapid_public_key == "public-key"

    def test_verify(self, identity):
        record = identity.get_or_create()

        assert identity.verify(record.group_code) is Tier.MEMBER
        assert identity.verify(record.admin_code.lower()) is Tier.ADMIN
        assert identity.verify(f"  {record.group_code} ") is Tier.MEMBER
        assert identity.verify("BABA-XXXXXX") is None
        assert identity.verify("") is None
        assert identity.verify(None) is None


class TestRosterStore:
    """Test roster operations."""

    def test_add_and_list_in_order(self, roster):
        first_id, _ = roster.add("Ann")
        second_id, _ = roster.add("Ben", push_subscription={"endpoint": "e"}, phone="5551234567", is_admin=True)

        members = roster.list()

        assert [member_id for member_id, _ in members] == [first_id, second_id]
        ben = members[1][1]
        assert ben.has_push and ben.is_admin
        assert ben.phone == "+15551234567"
        assert ben.joined_at.endswith("Z")

    def test_persisted_layout(self, tmp_path, roster):
        member_id, _ = roster.add("Ann", push_subscription={"endpoint": "e"})

        on_disk = json.loads((tmp_path / "subscriptions.json").read_text())

        assert on_disk[member_id]["name"] == "Ann"
        assert on_disk[member_id]["subscription"] == {"endpoint": "e"}
        assert on_disk[member_id]["isAdmin"] is False
        assert "joinedAt" in on_disk[member_id]

    def test_name_uniqueness(self, roster):
        member_id, _ = roster.add("alice ")

        assert not roster.is_name_unique("Alice")
        assert roster.is_name_unique("ALICE", exclude_id=member_id)
        with pytest.raises(DuplicateName):
            roster.add("  ALICE")
        assert len(roster.list()) == 1

    def test_blank_name(self, roster):
        with pytest.raises(EmptyName):
            roster.add("   ")
        with pytest.raises(EmptyName):
            roster.add(None)

    def test_update_partial(self, roster):
        member_id, _ = roster.add("Ann", phone="5551234567")

        member = roster.update(member_id, is_admin=True)

        assert member.name == "Ann"
        assert member.phone == "+15551234567"
        assert member.is_admin

    def test_update_phone_normalized_and_cleared(self, roster):
        member_id, _ = roster.add("Ann")

        assert roster.update(member_id, phone="44 20 7946 0958").phone == "+442079460958"
        assert roster.update(member_id, phone=None).phone is None

    def test_update_blank_name_ignored(self, roster):
        member_id, _ = roster.add("Ann")

        assert roster.update(member_id, name="  ").name == "Ann"

    def test_update_errors(self, roster):
        roster.add("Ann")
        member_id, _ = roster.add("Ben")

        with pytest.raises(DuplicateName):
            roster.update(member_id, name="ann")
        with pytest.raises(NotFound):
            roster.update("missing", name="X")

    def test_remove(self, roster):
        first_id, _ = roster.add("Ann")
        second_id, _ = roster.add("Ben")

        roster.remove(first_id)

        assert [member_id for member_id, _ in roster.list()] == [second_id]
        with pytest.raises(NotFound):
            roster.remove(first_id)

    def test_clear_push_endpoint(self, roster):
        member_id, _ = roster.add("Ann", push_subscription={"endpoint": "e"})

        roster.clear_push_endpoint(member_id)

        (_, member), = roster.list()
        assert member.push_subscription is None
        assert member.name == "Ann"

    def test_login(self, identity, roster):
        record = identity.get_or_create()
        member_id, _ = roster.add("Ann")

        found_id, member = roster.login(" ann ", record.group_code)

        assert found_id == member_id
        assert member.name == "Ann"

    def test_login_errors(self, identity, roster):
        record = identity.get_or_create()
        roster.add("Ann")

        with pytest.raises(InvalidCode):
            roster.login("Ann", "wrong")
        with pytest.raises(NotFound):
            roster.login("Zed", record.admin_code)
        assert len(roster.list()) == 1

    def test_unset_is_distinct_from_none(self, roster):
        member_id, _ = roster.add("Ann", phone="5551234567")

        assert roster.update(member_id, phone=UNSET).phone == "+15551234567"

    def test_concurrent_adds_all_persist(self, tmp_path, roster):
        threads = [threading.Thread(target=roster.add, args=(f"n{i}",)) for i in range(40)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(roster.list()) == 40
        assert len(json.loads((tmp_path / "subscriptions.json").read_text())) == 40

    def test_concurrent_update_and_remove(self, tmp_path, identity, roster):
        kept_id, _ = roster.add("Ann")
        removed_id, _ = roster.add("Ben")
        threads = [
            threading.Thread(target=roster.update, args=(kept_id,), kwargs={"phone": "5551234567", "is_admin": True}),
            threading.Thread(target=roster.remove, args=(removed_id,)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        members = dict(RosterStore(tmp_path, identity).list())
        assert list(members) == [kept_id]
        assert members[kept_id].phone == "+15551234567"
        assert members[kept_id].is_admin


class TestMessageLog:
    """Test the bounded message history."""

    def test_newest_first(self, tmp_path):
        log = MessageLog(tmp_path)

        log.append("one")
        log.append("two", sender="Coach")

        recent = log.recent()
        assert [m.text for m in recent] == ["two", "one"]
        assert [m.sender for m in recent] == ["Coach", "Admin"]
        assert recent[0].id != recent[1].id

    def test_capacity(self, tmp_path):
        log = MessageLog(tmp_path)

        for i in range(60):
            log.append(f"m{i}")

        recent = log.recent()
        assert len(recent) == 50
        assert recent[0].text == "m59"
        assert recent[-1].text == "m10"
        assert len(json.loads((tmp_path / "messages.json").read_text())) == 50


class TestHelpers:
    """Test code generation and phone normalization."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("5551234567", "+15551234567"),
            ("(555) 123-4567", "+15551234567"),
            ("+44 7911 123456", "+447911123456"),
            ("15551234567", "+15551234567"),
            ("", None),
            (None, None),
            ("call me", None),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_generate_code_alphabet(self):
        for _ in range(50):
            code = generate_code("BABA")
            assert code.startswith("BABA-")
            assert not set(code[5:]) & set("01IO")

    def test_codes_match(self):
        assert codes_match("baba-abc", "BABA-ABC")
        assert not codes_match("BABA-ABD", "BABA-ABC")
        assert not codes_match(None, "BABA-ABC")
