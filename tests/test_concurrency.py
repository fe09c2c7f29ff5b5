import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed

from sqlalchemy import select

from ride_ledger.database import session_scope
from ride_ledger.models import Transaction, User

from .utils import auth_headers, make_user, request_ride, wallet_balance


def test_concurrent_assign_of_one_driver_books_once(client):
    admin = make_user("admin")
    driver = make_user("driver")
    rides = [request_ride(client, make_user(), fare_cents=1000) for _ in range(2)]
    h = auth_headers(admin)

    def assign(ride_id):
        return client.post(f"/rides/{ride_id}/assign", headers=h, json={"driver_id": str(driver)})

    with ThreadPoolExecutor(max_workers=2) as ex:
        results = [f.result() for f in as_completed([ex.submit(assign, r) for r in rides])]

    assert sorted(r.status_code for r in results) == [200, 409]
    loser = next(r for r in results if r.status_code == 409)
    assert loser.json()["error"] == "driver_unavailable"

    statuses = sorted(client.get(f"/rides/{r}", headers=h).json()["data"]["status"] for r in rides)
    assert statuses == ["assigned", "requested"]
    with session_scope() as db:
        assert str(db.get(User, driver).current_ride_id) in rides


def test_concurrent_complete_posts_a_single_pair(client):
    admin, passenger, driver = make_user("admin"), make_user(), make_user("driver")
    ride_id = request_ride(client, passenger, fare_cents=4000)
    h = auth_headers(admin)
    assert client.post(f"/rides/{ride_id}/assign", headers=h, json={"driver_id": str(driver)}).status_code == 200

    def complete():
        return client.post(f"/rides/{ride_id}/complete", headers=h)

    with ThreadPoolExecutor(max_workers=4) as ex:
        results = [f.result() for f in as_completed([ex.submit(complete) for _ in range(4)])]

    codes = sorted(r.status_code for r in results)
    assert codes == [200, 409, 409, 409]
    assert {r.json()["error"] for r in results if r.status_code == 409} == {"already_completed"}

    with session_scope() as db:
        entries = db.execute(select(Transaction).where(Transaction.ride_id == uuid.UUID(ride_id))).scalars().all()
        assert len(entries) == 2
    assert wallet_balance(client, admin, passenger) == -4000
    assert wallet_balance(client, admin, driver) == 3200


def test_concurrent_autoassign_spreads_over_drivers(client):
    admin = make_user("admin")
    drivers = {str(make_user("driver")) for _ in range(3)}
    rides = [request_ride(client, make_user(), fare_cents=500) for _ in range(3)]
    h = auth_headers(admin)

    def auto(ride_id):
        return client.post(f"/rides/{ride_id}/autoassign", headers=h)

    with ThreadPoolExecutor(max_workers=3) as ex:
        results = [f.result() for f in as_completed([ex.submit(auto, r) for r in rides])]

    assert all(r.status_code == 200 for r in results), [r.text for r in results]
    assigned = {r.json()["data"]["driver_id"] for r in results}
    assert assigned == drivers
