import pytest

import notifications
from errors import NotFound, ValidationError


def _seed(db, user_id, n):
    for i in range(n):
        notifications.create_notification(db, user_id, "SYSTEM_ANNOUNCEMENT", f"Title {i}", f"Message {i}")


def test_create_notification_is_unread(db, make_user):
    user = make_user()
    n = notifications.create_notification(db, user["id"], "STOCK_LOW", "Low", "Only 2 left",
                                          {"product_id": "p1", "product_name": "Rice", "current_stock": 2})
    assert n["is_read"] is False
    assert n["user_id"] == user["id"]
    assert n["data"]["current_stock"] == 2
    assert notifications.unread_count(db, user["id"]) == 1


def test_create_notification_for_unknown_user(db):
    with pytest.raises(NotFound):
        notifications.create_notification(db, "64b7f0000000000000000000", "SYSTEM_ANNOUNCEMENT", "Hi", "There")


def test_payload_must_match_type(db, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        notifications.create_notification(db, user["id"], "STOCK_LOW", "Low", "msg", {"order_id": "x"})


def test_unknown_type_rejected(db, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        notifications.create_notification(db, user["id"], "PRICE_DROP", "Title", "msg")


def test_bulk_fan_out_one_per_user(db, make_user):
    users = [make_user() for _ in range(3)]
    count = notifications.create_bulk_notifications(
        db, [u["id"] for u in users], "SYSTEM_ANNOUNCEMENT", "Market closed", "Closed on Friday"
    )
    assert count == 3
    docs = list(db["notification"].find({}))
    assert sorted(d["user_id"] for d in docs) == sorted(u["id"] for u in users)
    assert {(d["type"], d["title"], d["message"], d["is_read"]) for d in docs} == {
        ("SYSTEM_ANNOUNCEMENT", "Market closed", "Closed on Friday", False)
    }


def test_bulk_is_all_or_nothing(db, make_user):
    user = make_user()
    with pytest.raises(NotFound):
        notifications.create_bulk_notifications(
            db, [user["id"], "64b7f0000000000000000000"], "SYSTEM_ANNOUNCEMENT", "t", "m"
        )
    assert db["notification"].count_documents({}) == 0


def test_bulk_empty_list(db):
    assert notifications.create_bulk_notifications(db, [], "SYSTEM_ANNOUNCEMENT", "t", "m") == 0


def test_bulk_collapses_duplicate_ids(db, make_user):
    first, second = make_user(), make_user()
    count = notifications.create_bulk_notifications(
        db, [first["id"], first["id"], second["id"]], "SYSTEM_ANNOUNCEMENT", "Market closed", "Closed on Friday"
    )
    assert count == 2
    assert db["notification"].count_documents({}) == 2
    assert db["notification"].count_documents({"user_id": first["id"]}) == 1


def test_pagination_pages(db, make_user):
    user = make_user()
    _seed(db, user["id"], 25)

    first = notifications.list_notifications(db, user["id"], page=1, limit=20)
    assert len(first["notifications"]) == 20
    assert first["pagination"]["has_next"] is True
    assert first["pagination"]["has_prev"] is False
    assert first["pagination"]["total_pages"] == 2

    second = notifications.list_notifications(db, user["id"], page=2, limit=20)
    assert len(second["notifications"]) == 5
    assert second["pagination"]["has_next"] is False
    assert second["pagination"]["has_prev"] is True


def test_list_newest_first(db, make_user):
    user = make_user()
    _seed(db, user["id"], 3)
    titles = [n["title"] for n in notifications.list_notifications(db, user["id"])["notifications"]]
    assert titles == ["Title 2", "Title 1", "Title 0"]


def test_filters(db, make_user):
    user = make_user()
    _seed(db, user["id"], 2)
    low = notifications.create_notification(
        db, user["id"], "STOCK_LOW", "Low", "msg",
        {"product_id": "p", "product_name": "Milk", "current_stock": 1},
    )
    notifications.mark_read(db, user["id"], low["id"])

    unread = notifications.list_notifications(db, user["id"], filter_by="unread")
    assert unread["pagination"]["total"] == 2
    assert unread["unread_count"] == 2

    by_type = notifications.list_notifications(db, user["id"], filter_by="STOCK_LOW")
    assert [n["id"] for n in by_type["notifications"]] == [low["id"]]

    with pytest.raises(ValidationError):
        notifications.list_notifications(db, user["id"], filter_by="bogus")


def test_mark_all_read_is_idempotent(db, make_user):
    user = make_user()
    _seed(db, user["id"], 4)
    assert notifications.mark_all_read(db, user["id"]) == 4
    assert notifications.unread_count(db, user["id"]) == 0
    assert notifications.mark_all_read(db, user["id"]) == 0


def test_mark_unread_round_trip(db, make_user):
    user = make_user()
    n = notifications.create_notification(db, user["id"], "SYSTEM_ANNOUNCEMENT", "t", "m")
    assert notifications.mark_read(db, user["id"], n["id"])["is_read"] is True
    assert notifications.mark_unread(db, user["id"], n["id"])["is_read"] is False
    assert notifications.unread_count(db, user["id"]) == 1


def test_other_users_notification_is_not_found(db, make_user):
    owner, other = make_user(), make_user()
    n = notifications.create_notification(db, owner["id"], "SYSTEM_ANNOUNCEMENT", "t", "m")
    for op in (notifications.mark_read, notifications.get_notification, notifications.delete_notification):
        with pytest.raises(NotFound):
            op(db, other["id"], n["id"])
    assert db["notification"].find_one({})["is_read"] is False


def test_malformed_id_is_not_found(db, make_user):
    user = make_user()
    with pytest.raises(NotFound):
        notifications.mark_read(db, user["id"], "not-an-id")


def test_clear_all_only_touches_caller(db, make_user):
    a, b = make_user(), make_user()
    _seed(db, a["id"], 3)
    _seed(db, b["id"], 2)
    assert notifications.clear_all(db, a["id"]) == 3
    assert db["notification"].count_documents({"user_id": b["id"]}) == 2


def test_preferences_are_persisted(db, make_user):
    user = make_user()
    assert notifications.get_preferences(db, user["id"]) == notifications.DEFAULT_PREFERENCES

    prefs = notifications.update_preferences(
        db, user["id"], {"order_updates": False, "unknown": True, "marketing_emails": "yes"}
    )
    assert prefs["order_updates"] is False
    assert "unknown" not in prefs
    assert prefs["marketing_emails"] is False
    assert notifications.get_preferences(db, user["id"])["order_updates"] is False
