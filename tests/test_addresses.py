import pytest
from pymongo.errors import DuplicateKeyError

import addresses
import database
from errors import Conflict, NotFound, ValidationError

FIELDS = {
    "name": "Karim Uddin",
    "phone": "+8801700000000",
    "address_line1": "House 12, Road 5",
    "city": "Dhaka",
    "state": "Dhaka Division",
    "postal_code": "1207",
}


def _defaults(db, user_id):
    return db["address"].count_documents({"user_id": user_id, "is_default": True})


def _create(db, user_id, **extra):
    return addresses.create_address(db, user_id, {**FIELDS, **extra})


def test_create_applies_country_default(db, make_user):
    address = _create(db, make_user()["id"])
    assert address["country"] == "Bangladesh"
    assert address["is_default"] is False


def test_create_requires_fields(db, make_user):
    with pytest.raises(ValidationError):
        addresses.create_address(db, make_user()["id"], {**FIELDS, "city": ""})


def test_at_most_one_default_through_every_operation(db, make_user):
    user = make_user()
    uid = user["id"]
    a = _create(db, uid, is_default=True)
    assert _defaults(db, uid) == 1
    b = _create(db, uid, is_default=True)
    assert _defaults(db, uid) == 1
    c = _create(db, uid)
    assert _defaults(db, uid) == 1

    addresses.set_default_address(db, uid, a["id"])
    assert _defaults(db, uid) == 1
    addresses.update_address(db, uid, c["id"], {"is_default": True})
    assert _defaults(db, uid) == 1
    assert addresses.get_address(db, uid, c["id"])["is_default"] is True
    assert addresses.get_address(db, uid, b["id"])["is_default"] is False


def test_defaults_are_per_user(db, make_user):
    a, b = make_user(), make_user()
    _create(db, a["id"], is_default=True)
    _create(db, b["id"], is_default=True)
    assert _defaults(db, a["id"]) == 1
    assert _defaults(db, b["id"]) == 1


def test_set_default_short_circuits(db, make_user):
    uid = make_user()["id"]
    a = _create(db, uid, is_default=True)
    before = db["address"].find_one({})["updated_at"]
    address, changed = addresses.set_default_address(db, uid, a["id"])
    assert changed is False
    assert address["is_default"] is True
    assert db["address"].find_one({})["updated_at"] == before


def test_set_default_switches(db, make_user):
    uid = make_user()["id"]
    a = _create(db, uid, is_default=True)
    b = _create(db, uid)
    address, changed = addresses.set_default_address(db, uid, b["id"])
    assert changed is True
    assert address["id"] == b["id"] and address["is_default"] is True
    assert addresses.get_address(db, uid, a["id"])["is_default"] is False


def test_set_default_other_users_address(db, make_user):
    owner, other = make_user(), make_user()
    a = _create(db, owner["id"])
    with pytest.raises(NotFound):
        addresses.set_default_address(db, other["id"], a["id"])
    assert _defaults(db, owner["id"]) == 0


def test_list_puts_default_first(db, make_user):
    uid = make_user()["id"]
    first = _create(db, uid, is_default=True)
    _create(db, uid, name="Second")
    _create(db, uid, name="Third")
    listed = addresses.list_addresses(db, uid)
    assert listed[0]["id"] == first["id"]
    assert [a["name"] for a in listed[1:]] == ["Third", "Second"]


def test_deleting_default_promotes_oldest(db, make_user):
    uid = make_user()["id"]
    oldest = _create(db, uid, name="Oldest")
    _create(db, uid, name="Newer")
    default = _create(db, uid, is_default=True)
    addresses.delete_address(db, uid, default["id"])
    assert _defaults(db, uid) == 1
    assert addresses.get_address(db, uid, oldest["id"])["is_default"] is True


def test_delete_refused_when_used_by_order(db, make_user):
    uid = make_user()["id"]
    a = _create(db, uid)
    db["order"].insert_one({"customer_id": uid, "delivery_address_id": a["id"]})
    with pytest.raises(ValidationError, match="used in orders"):
        addresses.delete_address(db, uid, a["id"])


def test_update_is_partial(db, make_user):
    uid = make_user()["id"]
    a = _create(db, uid)
    updated = addresses.update_address(db, uid, a["id"], {"city": "Chattogram"})
    assert updated["city"] == "Chattogram"
    assert updated["name"] == FIELDS["name"]


def test_store_refuses_a_second_default(db, make_user):
    uid = make_user()["id"]
    _create(db, uid, is_default=True)
    other = _create(db, uid)
    with pytest.raises(DuplicateKeyError):
        db["address"].update_one({"name": other["name"], "is_default": False}, {"$set": {"is_default": True}})
    assert _defaults(db, uid) == 1


def test_switch_retries_when_another_request_wins(db, make_user, monkeypatch):
    uid = make_user()["id"]
    a = _create(db, uid, is_default=True)
    b = _create(db, uid)
    calls = []

    def contended(db_, work):
        calls.append(work)
        if len(calls) == 1:
            raise DuplicateKeyError("E11000 duplicate key error", 11000)
        return database.run_atomically(db_, work)

    monkeypatch.setattr(addresses, "run_atomically", contended)
    address, changed = addresses.set_default_address(db, uid, b["id"])
    assert changed is True and address["is_default"] is True
    assert len(calls) == 2
    assert addresses.get_address(db, uid, a["id"])["is_default"] is False
    assert _defaults(db, uid) == 1


def test_switch_gives_up_after_repeated_conflicts(db, make_user, monkeypatch):
    uid = make_user()["id"]
    a = _create(db, uid, is_default=True)
    b = _create(db, uid)

    def always_contended(db_, work):
        raise DuplicateKeyError("E11000 duplicate key error", 11000)

    monkeypatch.setattr(addresses, "run_atomically", always_contended)
    with pytest.raises(Conflict):
        addresses.set_default_address(db, uid, b["id"])
    assert addresses.get_address(db, uid, a["id"])["is_default"] is True
