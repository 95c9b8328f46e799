import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import REGISTRY

from services.common import ServiceSettings, dispose_engines, lifespan_session
from services.margin_service.app.locations import HotelLocationCatalog
from services.margin_service.app.main import create_app


def _rule_payload(name: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": name,
        "calculationType": "percentage",
        "percentValue": "15",
        "priority": 0,
        "createdBy": "admin@example.com",
        "conditions": {},
    }
    payload.update(overrides)
    return payload


def _run(coro):
    return asyncio.run(coro)


def _prepare_app(tmp_path) -> FastAPI:
    db_file = tmp_path / "margin.db"
    settings = ServiceSettings(
        app_name="Margin Service Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=f"sqlite+aiosqlite:///{db_file}",
    )
    return create_app(settings)


async def _seed_locations(app: FastAPI) -> None:
    async with lifespan_session(app.state.session_factory) as session:
        catalog = HotelLocationCatalog(session)
        for country_code, city in (("SA", "Riyadh"), ("SA", "Jeddah"), ("AE", "Dubai")):
            await catalog.add_location(country_code=country_code, city=city)


def _sample(name: str, labels: dict[str, str]) -> float:
    value = REGISTRY.get_sample_value(name, labels)
    return value if value is not None else 0.0


def test_global_percentage_rule_applies_to_any_booking(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await client.post("/margins", json=_rule_payload("Global"))
                assert created.status_code == 201
                rule = created.json()
                assert rule["percentValue"] == "15.00"
                assert rule["currency"] == "SAR"
                assert rule["isGlobal"] is True
                assert rule["conditionTags"] == ["global"]
                assert rule["appliedCount"] == 0

                simulated = await client.post("/margins/simulate", json={"basePrice": "500"})
                assert simulated.status_code == 200
                result = simulated.json()
                assert result["appliedRule"]["id"] == rule["id"]
                assert result["isDefaultMargin"] is False
                assert result["marginAmount"] == "75.00"
                assert result["finalPrice"] == "575.00"
                assert result["marginPercentage"] == "15.00"

    _run(body())
    _run(dispose_engines())


def test_higher_priority_rule_wins_for_country(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            await _seed_locations(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                low = await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Saudi standard",
                        percentValue="10",
                        priority=1,
                        conditions={"countries": ["SA"]},
                    ),
                )
                assert low.status_code == 201
                assert low.json()["conditions"]["countries"] == ["Saudi Arabia"]
                high = await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Saudi premium",
                        percentValue="20",
                        priority=2,
                        conditions={"countries": ["Saudi Arabia"]},
                    ),
                )
                assert high.status_code == 201

                response = await client.post(
                    "/margins/evaluate",
                    json={"basePrice": "1000", "country": "Saudi Arabia"},
                )
                assert response.status_code == 200
                result = response.json()
                assert result["appliedRule"]["id"] == high.json()["id"]
                assert result["marginAmount"] == "200.00"
                assert result["matchedRuleIds"] == [high.json()["id"], low.json()["id"]]

                elsewhere = await client.post(
                    "/margins/evaluate",
                    json={"basePrice": "1000", "country": "AE"},
                )
                assert elsewhere.json()["isDefaultMargin"] is True

    _run(body())
    _run(dispose_engines())


def test_hybrid_rule_adds_fixed_amount(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await client.post(
                    "/margins",
                    json=_rule_payload("Hybrid", calculationType="hybrid", percentValue="5", fixedAmount="20"),
                )
                assert created.status_code == 201

                response = await client.post("/margins/simulate", json={"basePrice": "1000"})
                result = response.json()
                assert result["marginAmount"] == "70.00"
                assert result["finalPrice"] == "1070.00"

    _run(body())
    _run(dispose_engines())


def test_default_margin_when_no_rule_matches(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post(
                    "/margins",
                    json=_rule_payload("Four star and up", conditions={"starRating": {"min": 4}}),
                )
                before = _sample("margin_evaluations_total", {"mode": "simulate", "outcome": "default"})

                response = await client.post("/margins/simulate", json={"basePrice": "200", "starRating": 3})
                assert response.status_code == 200
                result = response.json()
                assert result["appliedRule"] is None
                assert result["isDefaultMargin"] is True
                assert result["marginAmount"] == "30.00"
                assert result["finalPrice"] == "230.00"
                assert result["matchedRuleIds"] == []
                after = _sample("margin_evaluations_total", {"mode": "simulate", "outcome": "default"})
                assert after - before == 1

    _run(body())
    _run(dispose_engines())


def test_invalid_rules_and_contexts_are_rejected(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            await _seed_locations(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                out_of_range = await client.post("/margins", json=_rule_payload("Too much", percentValue="150"))
                assert out_of_range.status_code == 422

                unknown = await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Nowhere",
                        conditions={"countries": ["Atlantis"], "starRating": {"min": 5, "max": 2}},
                    ),
                )
                assert unknown.status_code == 422
                assert unknown.json()["detail"] == [
                    "starRating minimum must not exceed its maximum",
                    "unknown countries: Atlantis",
                ]

                fixed_zero = await client.post(
                    "/margins",
                    json=_rule_payload("Free", calculationType="fixed", fixedAmount="0"),
                )
                assert fixed_zero.status_code == 422

                first = await client.post("/margins", json=_rule_payload("Duplicate"))
                assert first.status_code == 201
                duplicate = await client.post("/margins", json=_rule_payload("Duplicate"))
                assert duplicate.status_code == 409

                bad_price = await client.post("/margins/simulate", json={"basePrice": "0"})
                assert bad_price.status_code == 422
                bad_dates = await client.post(
                    "/margins/simulate",
                    json={"basePrice": "100", "checkInDate": "2025-06-10", "checkOutDate": "2025-06-09"},
                )
                assert bad_dates.status_code == 422

                listing = await client.get("/margins")
                assert listing.json()["total"] == 1

    _run(body())
    _run(dispose_engines())


def test_update_toggle_and_delete_lifecycle(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await client.post("/margins", json=_rule_payload("Lifecycle"))
                rule_id = created.json()["id"]

                updated = await client.patch(
                    f"/margins/{rule_id}",
                    json={"percentValue": "18", "description": "Peak season", "updatedBy": "ops"},
                )
                assert updated.status_code == 200
                payload = updated.json()
                assert payload["percentValue"] == "18.00"
                assert payload["description"] == "Peak season"
                assert payload["updatedBy"] == "ops"
                assert payload["name"] == "Lifecycle"

                simulated = await client.post("/margins/simulate", json={"basePrice": "100"})
                assert simulated.json()["marginAmount"] == "18.00"

                toggled = await client.patch(f"/margins/{rule_id}/toggle", json={"updatedBy": "ops"})
                assert toggled.status_code == 200
                assert toggled.json()["status"] == "inactive"

                simulated = await client.post("/margins/simulate", json={"basePrice": "100"})
                assert simulated.json()["isDefaultMargin"] is True

                deleted = await client.delete(f"/margins/{rule_id}")
                assert deleted.status_code == 204
                missing = await client.get(f"/margins/{rule_id}")
                assert missing.status_code == 404
                missing_toggle = await client.patch(f"/margins/{rule_id}/toggle")
                assert missing_toggle.status_code == 404

    _run(body())
    _run(dispose_engines())


def test_recorded_rule_cannot_be_deleted(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await client.post("/margins", json=_rule_payload("Recorded"))
                rule_id = created.json()["id"]

                recorded = await client.post(
                    "/margins/record",
                    json={"bookingId": "BK-1001", "context": {"basePrice": "500"}},
                )
                assert recorded.status_code == 200
                assert recorded.json()["bookingId"] == "BK-1001"
                assert recorded.json()["marginAmount"] == "75.00"

                replayed = await client.post(
                    "/margins/record",
                    json={"bookingId": "BK-1001", "context": {"basePrice": "900"}},
                )
                assert replayed.status_code == 409

                simulated = await client.post("/margins/simulate", json={"basePrice": "500"})
                assert simulated.status_code == 200

                rule = (await client.get(f"/margins/{rule_id}")).json()
                assert rule["appliedCount"] == 1
                assert rule["totalRevenueGenerated"] == "75.00"

                deleted = await client.delete(f"/margins/{rule_id}")
                assert deleted.status_code == 409

                stats = await client.get("/margins/stats")
                assert stats.status_code == 200
                summary = stats.json()["summary"]
                assert summary["totalRules"] == 1
                assert summary["totalApplied"] == 1
                assert summary["totalRevenue"] == "75.00"

    _run(body())
    _run(dispose_engines())


def test_reorder_assigns_descending_priorities(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                ids = []
                for index, percent in enumerate(("10", "20", "30")):
                    created = await client.post(
                        "/margins",
                        json=_rule_payload(f"Rule {index}", percentValue=percent, priority=50),
                    )
                    ids.append(created.json()["id"])

                reordered = await client.post("/margins/reorder", json={"orderedIds": [ids[1], ids[2], ids[0]]})
                assert reordered.status_code == 204

                listing = (await client.get("/margins")).json()
                assert [item["id"] for item in listing["items"]] == [ids[1], ids[2], ids[0]]
                assert [item["priority"] for item in listing["items"]] == [3, 2, 1]

                simulated = await client.post("/margins/simulate", json={"basePrice": "100"})
                assert simulated.json()["appliedRule"]["id"] == ids[1]

                unknown = await client.post("/margins/reorder", json={"orderedIds": [ids[0], 9999]})
                assert unknown.status_code == 404
                duplicates = await client.post("/margins/reorder", json={"orderedIds": [ids[0], ids[0]]})
                assert duplicates.status_code == 422

    _run(body())
    _run(dispose_engines())


def test_list_filters_and_stats_by_type(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            await _seed_locations(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Riyadh city breaks",
                        description="Weekend demand",
                        conditions={"countries": ["SA"], "cities": ["riyadh"]},
                    ),
                )
                await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Dubai hybrid",
                        calculationType="hybrid",
                        percentValue="5",
                        fixedAmount="25",
                        conditions={"cities": ["Dubai"]},
                    ),
                )
                await client.post(
                    "/margins",
                    json=_rule_payload("Dormant", percentValue="40", status="inactive"),
                )

                by_country = (await client.get("/margins", params={"country": "saudi arabia"})).json()
                assert [item["name"] for item in by_country["items"]] == ["Riyadh city breaks"]
                assert by_country["items"][0]["conditions"]["cities"] == ["Riyadh"]
                assert by_country["items"][0]["specificity"] == 2

                by_type = (await client.get("/margins", params={"calculationType": "hybrid"})).json()
                assert by_type["total"] == 1

                by_search = (await client.get("/margins", params={"search": "weekend"})).json()
                assert by_search["total"] == 1

                inactive = (await client.get("/margins", params={"status": "inactive"})).json()
                assert [item["name"] for item in inactive["items"]] == ["Dormant"]

                stats = (await client.get("/margins/stats")).json()
                assert stats["summary"]["totalRules"] == 2
                assert stats["summary"]["avgMargin"] == "10.00"
                assert stats["byType"] == [
                    {"calculationType": "hybrid", "count": 1, "avgPercentValue": "5.00"},
                    {"calculationType": "percentage", "count": 1, "avgPercentValue": "15.00"},
                ]

    _run(body())
    _run(dispose_engines())


def test_locations_catalog_endpoint(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            await _seed_locations(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/margins/locations")
                assert response.status_code == 200
                payload = response.json()
                assert payload["countries"] == [
                    {"code": "SA", "name": "Saudi Arabia"},
                    {"code": "AE", "name": "United Arab Emirates"},
                ]
                assert payload["cities"] == ["Dubai", "Jeddah", "Riyadh"]
                assert payload["totalCountries"] == 2
                assert payload["totalCities"] == 3

                saudi = (await client.get("/margins/locations", params={"countries": "Saudi Arabia"})).json()
                assert saudi["cities"] == ["Jeddah", "Riyadh"]

                searched = (await client.get("/margins/locations", params={"search": "emir"})).json()
                assert searched["countries"] == [{"code": "AE", "name": "United Arab Emirates"}]

    _run(body())
    _run(dispose_engines())


def test_fixed_rule_in_other_currency_is_rejected_at_evaluation(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await client.post(
                    "/margins",
                    json=_rule_payload("Dollar fee", calculationType="fixed", fixedAmount="10", currency="usd"),
                )
                assert created.status_code == 201
                assert created.json()["currency"] == "USD"

                mismatch = await client.post("/margins/simulate", json={"basePrice": "100"})
                assert mismatch.status_code == 409

                matching = await client.post("/margins/simulate", json={"basePrice": "100", "currency": "USD"})
                assert matching.status_code == 200
                assert matching.json()["marginAmount"] == "10.00"

    _run(body())
    _run(dispose_engines())


def test_created_rule_reads_back_unchanged_from_list(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            await _seed_locations(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Ramadan B2B",
                        description="Corporate stays",
                        calculationType="hybrid",
                        percentValue="7.25",
                        fixedAmount="12.50",
                        priority=40,
                        conditions={
                            "countries": ["Saudi Arabia"],
                            "cities": ["Jeddah", "Riyadh"],
                            "starRating": {"min": 3, "max": 5},
                            "bookingValue": {"min": "1000.00", "max": "20000.00"},
                            "dateRange": {"start": "2025-03-01", "end": "2025-03-30"},
                            "mealTypes": ["breakfast", "half_board"],
                            "customerType": "b2b",
                        },
                    ),
                )
                assert created.status_code == 201
                listed = (await client.get("/margins")).json()["items"]
                assert len(listed) == 1

                server_assigned = {"id", "createdAt", "updatedAt"}
                expected = {key: value for key, value in created.json().items() if key not in server_assigned}
                actual = {key: value for key, value in listed[0].items() if key not in server_assigned}
                assert actual == expected
                assert actual["specificity"] == 7
                assert actual["conditions"]["starRating"] == {"min": 3, "max": 5}
                assert actual["conditions"]["bookingValue"] == {"min": "1000.00", "max": "20000.00"}
                assert actual["conditions"]["dateRange"] == {"start": "2025-03-01", "end": "2025-03-30"}

    _run(body())
    _run(dispose_engines())


def test_reorder_of_largest_batch_keeps_priorities_editable(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                ids = []
                for index in range(101):
                    created = await client.post("/margins", json=_rule_payload(f"Tier {index}"))
                    assert created.status_code == 201
                    ids.append(created.json()["id"])

                too_many = await client.post("/margins/reorder", json={"orderedIds": ids})
                assert too_many.status_code == 422

                reordered = await client.post("/margins/reorder", json={"orderedIds": ids[:100]})
                assert reordered.status_code == 204

                top = (await client.get(f"/margins/{ids[0]}")).json()
                assert top["priority"] == 100
                bottom = (await client.get(f"/margins/{ids[99]}")).json()
                assert bottom["priority"] == 1

                patched = await client.patch(
                    f"/margins/{ids[0]}",
                    json={"description": "Top tier", "updatedBy": "admin@example.com"},
                )
                assert patched.status_code == 200
                assert patched.json()["priority"] == 100
                assert patched.json()["description"] == "Top tier"

    _run(body())
    _run(dispose_engines())


def test_batch_evaluation_matches_single_evaluations(tmp_path) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            await _seed_locations(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                await client.post("/margins", json=_rule_payload("Everywhere", percentValue="10"))
                await client.post(
                    "/margins",
                    json=_rule_payload(
                        "Riyadh hybrid",
                        calculationType="hybrid",
                        percentValue="5",
                        fixedAmount="20",
                        priority=5,
                        conditions={"cities": ["Riyadh"], "starRating": {"min": 4}},
                    ),
                )

                contexts = [
                    {"basePrice": "1000", "country": "Saudi Arabia", "city": "Riyadh", "starRating": 5},
                    {"basePrice": "1000", "country": "Saudi Arabia", "city": "Riyadh", "starRating": 3},
                    {"basePrice": "450.50", "country": "AE", "city": "Dubai"},
                ]
                before = _sample("margin_evaluations_total", {"mode": "batch", "outcome": "rule"})
                batch = await client.post("/margins/evaluate/batch", json={"contexts": contexts})
                assert batch.status_code == 200
                body_json = batch.json()
                assert body_json["count"] == 3

                singles = [(await client.post("/margins/evaluate", json=context)).json() for context in contexts]
                assert body_json["items"] == singles
                assert [item["marginAmount"] for item in body_json["items"]] == ["70.00", "100.00", "45.05"]
                after = _sample("margin_evaluations_total", {"mode": "batch", "outcome": "rule"})
                assert after - before == 3

                invalid = await client.post(
                    "/margins/evaluate/batch",
                    json={"contexts": [{"basePrice": "100"}, {"basePrice": "0"}]},
                )
                assert invalid.status_code == 422
                assert invalid.json()["detail"].startswith("contexts[1]")

                empty = await client.post("/margins/evaluate/batch", json={"contexts": []})
                assert empty.status_code == 422

    _run(body())
    _run(dispose_engines())


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
