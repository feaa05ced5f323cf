"""
Cart service write path: version-checked saves and retry on concurrent writes.
"""
import pytest

from cart import CartService
from errors import Conflict


@pytest.fixture
def service(mongo_db):
    return CartService(mongo_db)


def test_new_cart_starts_at_version_zero(service, mongo_db):
    service.get_cart("user-1")

    assert mongo_db["cart"].find_one({"user": "user-1"})["version"] == 0


def test_each_write_bumps_version(service, mongo_db, make_product):
    product_id = make_product(quantity=10)

    service.add_item("user-1", product_id, 1)
    service.add_item("user-1", product_id, 1)

    stored = mongo_db["cart"].find_one({"user": "user-1"})
    assert stored["version"] == 2
    assert stored["items"][0]["quantity"] == 2


def test_read_only_access_does_not_write(service, mongo_db, make_product):
    service.add_item("user-1", make_product(), 1)

    service.get_cart("user-1")

    assert mongo_db["cart"].find_one({"user": "user-1"})["version"] == 1


def test_stale_save_is_rejected(service, make_product):
    product_id = make_product(quantity=10)
    service.add_item("user-1", product_id, 1)
    stale = service._find("user-1")
    fresh = service._find("user-1")

    fresh.add(product_id, 1, 10.0)
    assert service._save(fresh) is True

    stale.add(product_id, 5, 10.0)
    assert service._save(stale) is False
    assert service._find("user-1").find(product_id).quantity == 2


def test_mutation_is_reapplied_after_concurrent_write(service, mongo_db, make_product):
    product_id = make_product(quantity=10)
    service.add_item("user-1", product_id, 1)
    attempts = []

    def mutation(cart):
        attempts.append(cart.version)
        if len(attempts) == 1:
            # another request commits between our read and write
            mongo_db["cart"].update_one({"user": "user-1"}, {"$inc": {"version": 1}})
        cart.add(product_id, 1, 10.0)

    cart, _ = service._mutate("user-1", mutation)

    assert attempts == [1, 2]
    assert cart.find(product_id).quantity == 2
    assert mongo_db["cart"].find_one({"user": "user-1"})["version"] == 3


def test_conflict_after_retries_exhausted(mongo_db, make_product):
    service = CartService(mongo_db, max_retries=2)
    product_id = make_product(quantity=10)
    service.add_item("user-1", product_id, 1)

    def always_raced(cart):
        mongo_db["cart"].update_one({"user": "user-1"}, {"$inc": {"version": 1}})
        cart.add(product_id, 1, 10.0)

    with pytest.raises(Conflict):
        service._mutate("user-1", always_raced)

    assert service._find("user-1").find(product_id).quantity == 1
