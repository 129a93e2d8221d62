"""
tests/test_reviews.py
Reviews: eligibility rules, one review per booking, and the tour rating
aggregate kept in step with every create/update/delete.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.review.rating import average_rating
from shared.models.models import Tour, User
from tests.conftest import auth_headers, booking_payload, completed_booking


# ── Aggregation ───────────────────────────────────────────────

@pytest.mark.parametrize("ratings,expected", [
    ([], Decimal("0.0")),
    ([5], Decimal("5.0")),
    ([4, 5], Decimal("4.5")),
    ([5, 4, 4], Decimal("4.3")),
    ([1, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 2, 3], Decimal("2.0")),
    ([3, 4, 4, 4], Decimal("3.8")),
])
def test_average_rating(ratings, expected):
    assert average_rating(ratings) == expected


def test_average_rating_rounds_half_up():
    # 4.25 exactly
    assert average_rating([4, 4, 4, 5]) == Decimal("4.3")


# ── Create ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_review_completed_booking_updates_tour_rating(
    client: AsyncClient, tourist: User, guide: User, tour: Tour, db: AsyncSession
):
    booking = await completed_booking(client, tourist, guide, tour)
    response = await client.post(
        "/reviews",
        headers=auth_headers(tourist),
        json={"booking_id": booking["id"], "rating": 4, "comment": "Great food, great company"},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["rating"] == 4
    assert data["tour_id"] == str(tour.id)
    assert data["guide_id"] == str(guide.id)
    assert data["tourist"]["id"] == str(tourist.id)

    await db.refresh(tour)
    assert tour.rating == Decimal("4.0")
    assert tour.review_count == 1


@pytest.mark.asyncio
async def test_review_pending_booking_rejected(client: AsyncClient, tourist: User, tour: Tour):
    created = await client.post("/bookings", headers=auth_headers(tourist), json=booking_payload(tour))
    response = await client.post(
        "/reviews",
        headers=auth_headers(tourist),
        json={"booking_id": created.json()["id"], "rating": 5},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_duplicate_review_rejected(
    client: AsyncClient, tourist: User, guide: User, tour: Tour, db: AsyncSession
):
    booking = await completed_booking(client, tourist, guide, tour)
    payload = {"booking_id": booking["id"], "rating": 5}

    first = await client.post("/reviews", headers=auth_headers(tourist), json=payload)
    assert first.status_code == 201
    second = await client.post("/reviews", headers=auth_headers(tourist), json=payload)
    assert second.status_code == 409

    await db.refresh(tour)
    assert tour.review_count == 1


@pytest.mark.asyncio
async def test_cannot_review_someone_elses_booking(
    client: AsyncClient, tourist: User, other_tourist: User, guide: User, tour: Tour
):
    booking = await completed_booking(client, tourist, guide, tour)
    response = await client.post(
        "/reviews",
        headers=auth_headers(other_tourist),
        json={"booking_id": booking["id"], "rating": 1},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_invalid_rating_rejected(client: AsyncClient, tourist: User, guide: User, tour: Tour):
    booking = await completed_booking(client, tourist, guide, tour)
    response = await client.post(
        "/reviews",
        headers=auth_headers(tourist),
        json={"booking_id": booking["id"], "rating": 6},
    )
    assert response.status_code == 422


# ── Update / Delete ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_rating_tracks_update_and_delete(
    client: AsyncClient, tourist: User, other_tourist: User, guide: User, tour: Tour, db: AsyncSession
):
    first = await completed_booking(client, tourist, guide, tour)
    second = await completed_booking(client, other_tourist, guide, tour)

    r1 = await client.post("/reviews", headers=auth_headers(tourist), json={"booking_id": first["id"], "rating": 5})
    await client.post("/reviews", headers=auth_headers(other_tourist), json={"booking_id": second["id"], "rating": 4})
    await db.refresh(tour)
    assert tour.rating == Decimal("4.5")
    assert tour.review_count == 2

    response = await client.patch(
        f"/reviews/{r1.json()['id']}", headers=auth_headers(tourist), json={"rating": 3}
    )
    assert response.status_code == 200
    await db.refresh(tour)
    assert tour.rating == Decimal("3.5")

    response = await client.delete(f"/reviews/{r1.json()['id']}", headers=auth_headers(tourist))
    assert response.status_code == 200
    await db.refresh(tour)
    assert tour.rating == Decimal("4.0")
    assert tour.review_count == 1


@pytest.mark.asyncio
async def test_deleting_last_review_resets_rating(
    client: AsyncClient, tourist: User, guide: User, admin: User, tour: Tour, db: AsyncSession
):
    booking = await completed_booking(client, tourist, guide, tour)
    review = await client.post("/reviews", headers=auth_headers(tourist), json={"booking_id": booking["id"], "rating": 2})

    response = await client.delete(f"/reviews/{review.json()['id']}", headers=auth_headers(admin))
    assert response.status_code == 200

    await db.refresh(tour)
    assert tour.rating == Decimal("0.0")
    assert tour.review_count == 0


@pytest.mark.asyncio
async def test_only_author_can_edit(
    client: AsyncClient, tourist: User, other_tourist: User, guide: User, tour: Tour
):
    booking = await completed_booking(client, tourist, guide, tour)
    review = await client.post("/reviews", headers=auth_headers(tourist), json={"booking_id": booking["id"], "rating": 5})

    response = await client.patch(
        f"/reviews/{review.json()['id']}", headers=auth_headers(other_tourist), json={"rating": 1}
    )
    assert response.status_code == 403
    response = await client.delete(f"/reviews/{review.json()['id']}", headers=auth_headers(other_tourist))
    assert response.status_code == 403


# ── Helpful / Listings ────────────────────────────────────────

@pytest.mark.asyncio
async def test_mark_helpful(
    client: AsyncClient, tourist: User, other_tourist: User, guide: User, tour: Tour
):
    booking = await completed_booking(client, tourist, guide, tour)
    review = await client.post("/reviews", headers=auth_headers(tourist), json={"booking_id": booking["id"], "rating": 5})
    url = f"/reviews/{review.json()['id']}/helpful"

    assert (await client.post(url, headers=auth_headers(tourist))).status_code == 400

    response = await client.post(url, headers=auth_headers(other_tourist))
    assert response.status_code == 200
    assert response.json()["helpful"] == 1


@pytest.mark.asyncio
async def test_tour_reviews_listing_reflects_new_reviews(
    client: AsyncClient, tourist: User, other_tourist: User, guide: User, tour: Tour
):
    """The cached tour review list is invalidated when a review is added."""
    first = await completed_booking(client, tourist, guide, tour)
    await client.post("/reviews", headers=auth_headers(tourist), json={"booking_id": first["id"], "rating": 5})

    listing = await client.get(f"/reviews/tour/{tour.id}")
    assert listing.status_code == 200
    assert len(listing.json()) == 1

    second = await completed_booking(client, other_tourist, guide, tour)
    await client.post("/reviews", headers=auth_headers(other_tourist), json={"booking_id": second["id"], "rating": 3})

    listing = await client.get(f"/reviews/tour/{tour.id}")
    assert len(listing.json()) == 2

    by_guide = await client.get(f"/reviews/guide/{guide.id}")
    assert len(by_guide.json()) == 2

    mine = await client.get("/reviews/me", headers=auth_headers(tourist))
    assert len(mine.json()) == 1


@pytest.mark.asyncio
async def test_reviews_by_user_and_admin_listing(
    client: AsyncClient, tourist: User, other_tourist: User, guide: User, admin: User, tour: Tour
):
    first = await completed_booking(client, tourist, guide, tour)
    await client.post("/reviews", headers=auth_headers(tourist), json={"booking_id": first["id"], "rating": 5})
    second = await completed_booking(client, other_tourist, guide, tour)
    await client.post("/reviews", headers=auth_headers(other_tourist), json={"booking_id": second["id"], "rating": 2})

    by_user = await client.get(f"/reviews/user/{tourist.id}")
    assert by_user.status_code == 200
    assert [r["rating"] for r in by_user.json()] == [5]

    everything = await client.get("/reviews/admin/all", headers=auth_headers(admin), params={"page_size": 1})
    assert everything.status_code == 200
    data = everything.json()
    assert data["total"] == 2
    assert data["pages"] == 2
    assert len(data["items"]) == 1

    response = await client.get("/reviews/admin/all", headers=auth_headers(tourist))
    assert response.status_code == 403
