"""Tests for profiles, passwords and admin user management."""

import pytest
from bson import ObjectId

import orders
import users
from database import create_document
from errors import UserNotFoundError, ValidationError
from schemas import OrderItem, ProfileUpdate, User, UserAddress


@pytest.fixture
def make_user(db):
    """Factory inserting a local user and returning its id."""

    def _make(name="Sita Rai", email="sita@example.com", password="secret123", **fields):
        pw_hash, salt = users.hash_password(password)
        user = User(name=name, email=email, password_hash=pw_hash, salt=salt, **fields)
        return create_document(db, "user", user)

    return _make


class TestProfile:
    def test_private_fields_hidden(self, db, make_user):
        uid = make_user()
        db["user"].update_one({"_id": ObjectId(uid)}, {"$set": {"token": "abc"}})
        user = users.get_user(db, uid)
        assert user["email"] == "sita@example.com"
        for field in ("password_hash", "salt", "token"):
            assert field not in user

    def test_unknown_user(self, db):
        with pytest.raises(UserNotFoundError):
            users.get_user(db, str(ObjectId()))
        with pytest.raises(UserNotFoundError):
            users.get_user(db, "nope")

    def test_update_only_given_fields(self, db, make_user):
        uid = make_user(phone="9800000000")
        updated = users.update_profile(db, uid, ProfileUpdate(
            address=UserAddress(city="Pokhara", country="Nepal"),
        ))
        assert updated["name"] == "Sita Rai"
        assert updated["phone"] == "9800000000"
        assert updated["address"]["city"] == "Pokhara"
        assert updated["preferences"]["notifications"]["email"] is True
        assert "password_hash" not in updated


class TestPasswords:
    def test_change_password(self, db, make_user):
        uid = make_user()
        users.change_password(db, uid, "secret123", "n3w-secret")
        stored = users.get_user(db, uid, include_private=True)
        assert users.verify_password("n3w-secret", stored["salt"], stored["password_hash"])
        assert not users.verify_password("secret123", stored["salt"], stored["password_hash"])

    def test_wrong_current_password(self, db, make_user):
        uid = make_user()
        before = users.get_user(db, uid, include_private=True)["password_hash"]
        with pytest.raises(ValidationError) as exc_info:
            users.change_password(db, uid, "guess", "n3w-secret")
        assert exc_info.value.message == "Current password is incorrect"
        assert users.get_user(db, uid, include_private=True)["password_hash"] == before

    def test_oauth_user_has_no_password(self, db, make_user):
        uid = make_user(provider="google")
        with pytest.raises(ValidationError) as exc_info:
            users.change_password(db, uid, "secret123", "n3w-secret")
        assert "OAuth" in exc_info.value.message

    def test_logout_drops_token(self, db, make_user):
        uid = make_user()
        db["user"].update_one({"_id": ObjectId(uid)}, {"$set": {"token": "abc", "token_expires": "soon"}})
        users.logout(db, uid)
        stored = users.get_user(db, uid, include_private=True)
        assert "token" not in stored
        assert "token_expires" not in stored


class TestAdmin:
    def test_list_filters_and_search(self, db, make_user):
        make_user(name="Sita Rai", email="sita@example.com")
        make_user(name="Ram Thapa", email="ram@example.com", role="admin")
        make_user(name="Gita Rai", email="gita@example.com", is_active=False)

        found, total = users.list_users(db, search="rai", sort_by="name", sort_order="asc")
        assert total == 2
        assert [u["name"] for u in found] == ["Gita Rai", "Sita Rai"]
        assert all("password_hash" not in u for u in found)

        found, total = users.list_users(db, role="admin")
        assert [u["email"] for u in found] == ["ram@example.com"]

        found, total = users.list_users(db, is_active=False, limit=1)
        assert total == 1
        assert found[0]["name"] == "Gita Rai"

    def test_details_with_order_statistics(self, db, make_user, address):
        uid = make_user()
        for price in (10.0, 20.0):
            orders.create_order(db, uid, [OrderItem(product_id=str(ObjectId()), quantity=1, price=price)],
                                address, address, subtotal=price)

        details = users.get_user_details(db, uid)

        assert details["user"]["email"] == "sita@example.com"
        assert len(details["recent_orders"]) == 2
        assert details["statistics"]["total_orders"] == 2
        assert details["statistics"]["total_spent"] == 30.0
        assert details["statistics"]["average_order_value"] == 15.0

    def test_details_without_orders(self, db, make_user):
        details = users.get_user_details(db, make_user())
        assert details["recent_orders"] == []
        assert details["statistics"] == {"total_orders": 0, "total_spent": 0, "average_order_value": 0}

    def test_deactivate_revokes_token(self, db, make_user):
        uid = make_user()
        db["user"].update_one({"_id": ObjectId(uid)}, {"$set": {"token": "abc"}})

        user = users.set_active(db, uid, False)

        assert user["is_active"] is False
        assert "token" not in users.get_user(db, uid, include_private=True)
        assert users.set_active(db, uid, True)["is_active"] is True

    def test_set_role(self, db, make_user):
        admin = make_user(email="admin@example.com", role="admin")
        uid = make_user()
        assert users.set_role(db, admin, uid, "admin")["role"] == "admin"

    def test_cannot_change_own_role(self, db, make_user):
        admin = make_user(email="admin@example.com", role="admin")
        with pytest.raises(ValidationError):
            users.set_role(db, admin, admin, "user")
        assert users.get_user(db, admin)["role"] == "admin"
