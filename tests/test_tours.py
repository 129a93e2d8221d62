"""
tests/test_tours.py
Tour listings: guide CRUD, slug handling, search filters and cached reads.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Tour, TourStatus, User
from shared.utils.slug import create_slug
from tests.conftest import TOUR_DATE, auth_headers


def _tour_payload(**overrides) -> dict:
    payload = {
        "title": "Sundarbans Mangrove Day Trip",
        "description": "Boat ride through the mangrove forest with a local naturalist.",
        "category": "NATURE",
        "location": "Khulna",
        "tour_fee": "250.00",
        "max_duration": "8",
        "max_group_size": 10,
        "highlights": ["Boat ride", "Wildlife spotting"],
        "itinerary": [{"time": "08:00", "title": "Departure", "location": "Mongla port"}],
        "available_dates": [{"date": TOUR_DATE.isoformat(), "times": ["08:00"]}],
    }
    payload.update(overrides)
    return payload


# ── Slugs ─────────────────────────────────────────────────────

@pytest.mark.parametrize("title,slug", [
    ("Old Dhaka Food Walk", "old-dhaka-food-walk"),
    ("  Café & Culture!! ", "cafe-culture"),
    ("Sylhet -- Tea Gardens", "sylhet-tea-gardens"),
    ("!!!", "tour"),
])
def test_create_slug(title, slug):
    assert create_slug(title) == slug


# ── Guide CRUD ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_guide_creates_tour(client: AsyncClient, guide: User):
    response = await client.post("/tours", headers=auth_headers(guide), json=_tour_payload())
    assert response.status_code == 201
    data = response.json()
    assert data["slug"] == "sundarbans-mangrove-day-trip"
    assert data["guide"]["id"] == str(guide.id)
    assert data["status"] == TourStatus.ACTIVE.value
    assert data["available_dates"][0]["date"] == TOUR_DATE.isoformat()
    assert float(data["rating"]) == 0.0


@pytest.mark.asyncio
async def test_duplicate_title_conflicts(client: AsyncClient, guide: User):
    await client.post("/tours", headers=auth_headers(guide), json=_tour_payload())
    response = await client.post("/tours", headers=auth_headers(guide), json=_tour_payload())
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_tourist_cannot_create_tour(client: AsyncClient, tourist: User):
    response = await client.post("/tours", headers=auth_headers(tourist), json=_tour_payload())
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_update_title_regenerates_slug(client: AsyncClient, guide: User, tour: Tour):
    response = await client.patch(
        f"/tours/{tour.id}",
        headers=auth_headers(guide),
        json={"title": "Old Dhaka Night Food Walk", "tour_fee": "120.50"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["slug"] == "old-dhaka-night-food-walk"
    assert float(data["tour_fee"]) == 120.5

    assert (await client.get("/tours/old-dhaka-food-walk")).status_code == 404
    assert (await client.get("/tours/old-dhaka-night-food-walk")).status_code == 200


@pytest.mark.asyncio
async def test_other_guide_cannot_update(client: AsyncClient, other_guide: User, tour: Tour):
    response = await client.patch(
        f"/tours/{tour.id}", headers=auth_headers(other_guide), json={"location": "Chittagong"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_status_cannot_be_set_to_deleted_by_update(client: AsyncClient, guide: User, tour: Tour):
    response = await client.patch(
        f"/tours/{tour.id}", headers=auth_headers(guide), json={"status": "DELETED"}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_soft_delete_hides_tour(client: AsyncClient, guide: User, tour: Tour, db: AsyncSession):
    response = await client.delete(f"/tours/{tour.id}", headers=auth_headers(guide))
    assert response.status_code == 200

    await db.refresh(tour)
    assert tour.status == TourStatus.DELETED

    assert (await client.get(f"/tours/{tour.slug}")).status_code == 404
    listing = await client.get("/tours")
    assert listing.json()["total"] == 0
    mine = await client.get("/tours/me/listings", headers=auth_headers(guide))
    assert mine.json() == []


@pytest.mark.asyncio
async def test_inactive_tour_detail_forbidden(client: AsyncClient, guide: User, tour: Tour):
    await client.patch(f"/tours/{tour.id}", headers=auth_headers(guide), json={"status": "INACTIVE"})
    response = await client.get(f"/tours/{tour.slug}")
    assert response.status_code == 403

    mine = await client.get("/tours/me/listings", headers=auth_headers(guide))
    assert len(mine.json()) == 1


# ── Search ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_filters(client: AsyncClient, guide: User, tour: Tour):
    await client.post("/tours", headers=auth_headers(guide), json=_tour_payload())

    everything = await client.get("/tours")
    assert everything.status_code == 200
    assert everything.json()["total"] == 2

    food = await client.get("/tours", params={"category": "FOOD"})
    assert [t["slug"] for t in food.json()["items"]] == [tour.slug]

    cheap = await client.get("/tours", params={"max_price": "150"})
    assert [t["slug"] for t in cheap.json()["items"]] == [tour.slug]

    text = await client.get("/tours", params={"search": "mangrove"})
    assert text.json()["total"] == 1

    by_place = await client.get("/tours", params={"location": "dhaka"})
    assert by_place.json()["total"] == 1

    on_date = await client.get("/tours", params={"date": TOUR_DATE.isoformat()})
    assert on_date.json()["total"] == 2

    short = await client.get("/tours", params={"max_duration": "4"})
    assert short.json()["total"] == 1


@pytest.mark.asyncio
async def test_search_terms_match_literally(client: AsyncClient, tour: Tour):
    for params in ({"search": "%"}, {"search": "_"}, {"location": "dh_ka"}, {"search": "food%walk"}):
        response = await client.get("/tours", params=params)
        assert response.status_code == 200
        assert response.json()["total"] == 0, params

    response = await client.get("/tours", params={"search": "food walk"})
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_search_sort_and_pagination(client: AsyncClient, guide: User, tour: Tour):
    await client.post("/tours", headers=auth_headers(guide), json=_tour_payload())

    response = await client.get(
        "/tours", params={"sort_by": "price", "sort_order": "desc", "page_size": 1}
    )
    data = response.json()
    assert data["pages"] == 2
    assert data["items"][0]["slug"] == "sundarbans-mangrove-day-trip"

    page_two = await client.get(
        "/tours", params={"sort_by": "price", "sort_order": "desc", "page_size": 1, "page": 2}
    )
    assert page_two.json()["items"][0]["slug"] == tour.slug


@pytest.mark.asyncio
async def test_listing_cache_invalidated_by_new_tour(client: AsyncClient, guide: User, tour: Tour):
    first = await client.get("/tours")
    assert first.json()["total"] == 1

    await client.post("/tours", headers=auth_headers(guide), json=_tour_payload())

    second = await client.get("/tours")
    assert second.json()["total"] == 2


@pytest.mark.asyncio
async def test_tour_detail_served_from_cache_until_update(client: AsyncClient, guide: User, tour: Tour, redis):
    first = await client.get(f"/tours/{tour.slug}")
    assert first.status_code == 200
    assert await redis.get("tour:old-dhaka-food-walk:v") is None

    await client.patch(f"/tours/{tour.id}", headers=auth_headers(guide), json={"location": "Old Dhaka"})
    assert await redis.get("tour:old-dhaka-food-walk:v") == "2"

    second = await client.get(f"/tours/{tour.slug}")
    assert second.json()["location"] == "Old Dhaka"
