"""
Settlement Tests - Commission rate store and rate history
"""
from datetime import datetime

import pytest
from bson import ObjectId

from settlement.commission_store import (
    CREATED, UPDATED, DEACTIVATED, assert_unique_headers, diff_commission_rates
)
from settlement.exceptions import InvariantViolationError, NotFoundError, StateError, ValidationError

from fakes import seed_header, seed_model, seed_subdealer

JAN = datetime(2024, 1, 1)
JUL = datetime(2024, 7, 1)


@pytest.fixture
def catalogue(db):
    return {
        "subdealer": seed_subdealer(db),
        "model": seed_model(db, "EV"),
        "ex_showroom": seed_header(db, "EX_SHOWROOM", "EV"),
        "insurance": seed_header(db, "INSURANCE", "EV"),
        "accessories": seed_header(db, "ACCESSORIES", "EV"),
    }


def _rate(header, rate, applicable_from=JAN, applicable_to=None, is_active=True):
    return {
        "header_id": str(header["_id"]),
        "commission_rate": rate,
        "is_active": is_active,
        "applicable_from": applicable_from,
        "applicable_to": applicable_to,
    }


class TestDiff:
    """Pure diff of a replacement list against stored rows"""

    def test_created_updated_deactivated(self):
        kept, changed, dropped, added = ObjectId(), ObjectId(), ObjectId(), ObjectId()
        current = [
            {"header_id": kept, "commission_rate": 2.0, "is_active": True, "applicable_from": JAN, "applicable_to": None},
            {"header_id": changed, "commission_rate": 5.0, "is_active": True, "applicable_from": JAN, "applicable_to": None},
            {"header_id": dropped, "commission_rate": 1.0, "is_active": True, "applicable_from": JAN, "applicable_to": None},
        ]
        incoming = [
            {"header_id": kept, "commission_rate": 2.0, "is_active": True, "applicable_from": JAN, "applicable_to": None},
            {"header_id": changed, "commission_rate": 7.0, "is_active": True, "applicable_from": JUL, "applicable_to": None},
            {"header_id": added, "commission_rate": 3.0, "is_active": True, "applicable_from": JUL, "applicable_to": None},
        ]
        changed_at = datetime(2024, 6, 15, 9, 30)

        rows, history = diff_commission_rates(current, incoming, "admin-1", changed_at)

        assert rows == incoming
        by_type = {h["change_type"]: h for h in history}
        assert len(history) == 3
        assert by_type[UPDATED]["header_id"] == changed
        assert by_type[UPDATED]["previous_value"] == 5.0
        assert by_type[UPDATED]["previous_from"] == JAN
        assert by_type[CREATED]["header_id"] == added
        assert by_type[DEACTIVATED]["header_id"] == dropped
        assert by_type[DEACTIVATED]["commission_rate"] == 0.0
        assert by_type[DEACTIVATED]["is_active"] is False
        assert by_type[DEACTIVATED]["applicable_from"] == changed_at
        assert {h["changed_at"] for h in history} == {changed_at}

    def test_active_flag_counts_as_change(self):
        header = ObjectId()
        row = {"header_id": header, "commission_rate": 2.0, "is_active": True, "applicable_from": JAN, "applicable_to": None}
        _, history = diff_commission_rates([row], [dict(row, is_active=False)], None, JUL)
        assert [h["change_type"] for h in history] == [UPDATED]

    def test_unique_headers(self):
        header = ObjectId()
        with pytest.raises(InvariantViolationError) as exc:
            assert_unique_headers([{"header_id": header}, {"header_id": str(header)}])
        assert exc.value.violation_type == "DUPLICATE_COMMISSION_HEADER"


class TestUpsertRates:
    """Validated replacement of a (subdealer, model) rate list"""

    @pytest.mark.asyncio
    async def test_create_master(self, commission_store, catalogue):
        master = await commission_store.upsert_rates(
            str(catalogue["subdealer"]["_id"]), str(catalogue["model"]["_id"]),
            [_rate(catalogue["ex_showroom"], 2.456), _rate(catalogue["insurance"], 10)],
            actor="admin-1"
        )

        assert master["is_active"] is True
        assert [r["commission_rate"] for r in master["commission_rates"]] == [2.46, 10.0]
        assert [h["change_type"] for h in master["rate_history"]] == [CREATED, CREATED]
        assert master["created_by"] == "admin-1"

    @pytest.mark.asyncio
    async def test_replace_appends_history(self, commission_store, catalogue):
        subdealer, model = catalogue["subdealer"]["_id"], catalogue["model"]["_id"]
        await commission_store.upsert_rates(
            subdealer, model, [_rate(catalogue["ex_showroom"], 5), _rate(catalogue["insurance"], 10)]
        )

        master = await commission_store.upsert_rates(
            subdealer, model,
            [_rate(catalogue["ex_showroom"], 7, applicable_from=JUL), _rate(catalogue["accessories"], 4)],
            actor="admin-2"
        )

        assert len(master["commission_rates"]) == 2
        latest = master["rate_history"][2:]
        assert sorted(h["change_type"] for h in latest) == [CREATED, DEACTIVATED, UPDATED]
        assert len({h["changed_at"] for h in latest}) == 1
        assert master["updated_by"] == "admin-2"

    @pytest.mark.asyncio
    async def test_identical_replacement_adds_no_history(self, commission_store, catalogue):
        subdealer, model = catalogue["subdealer"]["_id"], catalogue["model"]["_id"]
        rates = [_rate(catalogue["ex_showroom"], 5, applicable_to=datetime(2024, 6, 30))]
        await commission_store.upsert_rates(subdealer, model, rates)
        master = await commission_store.upsert_rates(subdealer, model, rates)
        assert len(master["rate_history"]) == 1

    @pytest.mark.asyncio
    async def test_default_applicable_from_is_now(self, commission_store, catalogue):
        rate = _rate(catalogue["ex_showroom"], 5)
        rate["applicable_from"] = None
        before = datetime.utcnow().replace(microsecond=0)
        master = await commission_store.upsert_rates(catalogue["subdealer"]["_id"], catalogue["model"]["_id"], [rate])
        assert master["commission_rates"][0]["applicable_from"] >= before

    @pytest.mark.asyncio
    async def test_duplicate_header_rejected(self, commission_store, catalogue):
        with pytest.raises(ValidationError) as exc:
            await commission_store.upsert_rates(
                catalogue["subdealer"]["_id"], catalogue["model"]["_id"],
                [_rate(catalogue["ex_showroom"], 5), _rate(catalogue["ex_showroom"], 6)]
            )
        assert exc.value.message.startswith("Duplicate header_id found")

    @pytest.mark.asyncio
    async def test_header_rules(self, commission_store, db, catalogue):
        subdealer, model = catalogue["subdealer"]["_id"], catalogue["model"]["_id"]
        petrol = seed_header(db, "EX_SHOWROOM", "ICE")
        discount = seed_header(db, "DEALER_DISCOUNT", "EV", is_discount=True)

        with pytest.raises(NotFoundError):
            await commission_store.upsert_rates(subdealer, model, [_rate({"_id": ObjectId()}, 5)])
        with pytest.raises(ValidationError):
            await commission_store.upsert_rates(subdealer, model, [_rate(petrol, 5)])
        with pytest.raises(ValidationError):
            await commission_store.upsert_rates(subdealer, model, [_rate(discount, 5)])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rate", [None, -0.5, 100.01, float("nan"), float("inf"), "Infinity"])
    async def test_rate_bounds(self, commission_store, catalogue, rate):
        with pytest.raises(ValidationError):
            await commission_store.upsert_rates(
                catalogue["subdealer"]["_id"], catalogue["model"]["_id"], [_rate(catalogue["ex_showroom"], rate)]
            )

    @pytest.mark.asyncio
    async def test_window_must_be_ordered(self, commission_store, catalogue):
        with pytest.raises(ValidationError):
            await commission_store.upsert_rates(
                catalogue["subdealer"]["_id"], catalogue["model"]["_id"],
                [_rate(catalogue["ex_showroom"], 5, applicable_from=JUL, applicable_to=JAN)]
            )

    @pytest.mark.asyncio
    async def test_unknown_subdealer_and_model(self, commission_store, catalogue):
        with pytest.raises(NotFoundError):
            await commission_store.upsert_rates(ObjectId(), catalogue["model"]["_id"], [])
        with pytest.raises(NotFoundError):
            await commission_store.upsert_rates(catalogue["subdealer"]["_id"], ObjectId(), [])

    @pytest.mark.asyncio
    async def test_commission_change_is_audited(self, commission_store, audit, catalogue):
        master = await commission_store.upsert_rates(
            catalogue["subdealer"]["_id"], catalogue["model"]["_id"], [_rate(catalogue["ex_showroom"], 5)], actor="admin-1"
        )
        logs = await audit.get_audit_logs(entity_type="COMMISSION_MASTER", entity_id=str(master["_id"]))
        assert [log["action_type"] for log in logs] == ["CREATE"]


class TestDateRange:
    """One effective window across a subdealer's rows"""

    @pytest.mark.asyncio
    async def test_window_applied_to_every_master(self, commission_store, db, catalogue):
        subdealer = catalogue["subdealer"]["_id"]
        scooter = seed_model(db, "EV")
        await commission_store.upsert_rates(subdealer, catalogue["model"]["_id"], [_rate(catalogue["ex_showroom"], 5)])
        await commission_store.upsert_rates(subdealer, scooter["_id"], [_rate(catalogue["insurance"], 3)])

        counts = await commission_store.set_date_range(str(subdealer), "2024-04-01", "2024-09-30T23:59:59Z")
        assert counts == {"updated_count": 2, "changed_count": 2}

        master = await commission_store.get_master(subdealer, scooter["_id"])
        row = master["commission_rates"][0]
        assert row["applicable_from"] == datetime(2024, 4, 1)
        assert row["applicable_to"] == datetime(2024, 9, 30, 23, 59, 59)
        assert master["rate_history"][-1]["change_type"] == UPDATED

        # same window again changes nothing but still covers every master
        counts = await commission_store.set_date_range(subdealer, "2024-04-01", "2024-09-30T23:59:59Z")
        assert counts == {"updated_count": 2, "changed_count": 0}
        master = await commission_store.get_master(subdealer, scooter["_id"])
        assert len(master["rate_history"]) == 2

    @pytest.mark.asyncio
    async def test_requires_masters(self, commission_store, catalogue):
        with pytest.raises(StateError):
            await commission_store.set_date_range(catalogue["subdealer"]["_id"], JAN)

    @pytest.mark.asyncio
    async def test_requires_ordered_dates(self, commission_store, catalogue):
        with pytest.raises(ValidationError):
            await commission_store.set_date_range(catalogue["subdealer"]["_id"], JUL, JAN)
        with pytest.raises(ValidationError):
            await commission_store.set_date_range(catalogue["subdealer"]["_id"], None)


class TestReads:
    """Master lookup and history"""

    @pytest.mark.asyncio
    async def test_missing_master(self, commission_store, catalogue):
        with pytest.raises(NotFoundError):
            await commission_store.get_master(catalogue["subdealer"]["_id"], catalogue["model"]["_id"])

    @pytest.mark.asyncio
    async def test_history_filtered_by_header(self, commission_store, catalogue):
        subdealer, model = catalogue["subdealer"]["_id"], catalogue["model"]["_id"]
        await commission_store.upsert_rates(subdealer, model, [_rate(catalogue["ex_showroom"], 5), _rate(catalogue["insurance"], 1)])
        await commission_store.upsert_rates(subdealer, model, [_rate(catalogue["ex_showroom"], 6), _rate(catalogue["insurance"], 1)])

        history = await commission_store.get_rate_history(subdealer, model, str(catalogue["ex_showroom"]["_id"]))

        assert [h["change_type"] for h in history] == [UPDATED, CREATED]
        assert history[0]["commission_rate"] == 6.0

    @pytest.mark.asyncio
    async def test_unique_subdealer_model_index(self, commission_store, db):
        await commission_store.create_indexes()
        assert ["subdealer_id", "model_id"] in db["commissionmasters"].unique_indexes


class TestMasterListing:
    """Active masters per subdealer and per model"""

    @pytest.mark.asyncio
    async def test_by_subdealer_and_model(self, commission_store, db, catalogue):
        subdealer, model = catalogue["subdealer"]["_id"], catalogue["model"]["_id"]
        scooter = seed_model(db, "EV")
        other_dealer = seed_subdealer(db)
        first = await commission_store.upsert_rates(subdealer, model, [_rate(catalogue["ex_showroom"], 5)])
        second = await commission_store.upsert_rates(subdealer, scooter["_id"], [_rate(catalogue["ex_showroom"], 4)])
        await commission_store.upsert_rates(other_dealer["_id"], model, [_rate(catalogue["ex_showroom"], 3)])

        by_subdealer = await commission_store.list_masters_by_subdealer(str(subdealer))
        assert {m["_id"] for m in by_subdealer["commission_masters"]} == {first["_id"], second["_id"]}
        assert by_subdealer["pagination"]["total"] == 2

        by_model = await commission_store.list_masters_by_model(model)
        assert by_model["pagination"]["total"] == 2

        await commission_store.set_master_status(first["_id"], False)
        by_subdealer = await commission_store.list_masters_by_subdealer(subdealer, page=1, limit=1)
        assert [m["_id"] for m in by_subdealer["commission_masters"]] == [second["_id"]]
        assert by_subdealer["pagination"]["hasNext"] is False

    @pytest.mark.asyncio
    async def test_unknown_owner(self, commission_store, catalogue):
        with pytest.raises(NotFoundError):
            await commission_store.list_masters_by_subdealer(ObjectId())
        with pytest.raises(NotFoundError):
            await commission_store.list_masters_by_model(ObjectId())
        with pytest.raises(ValidationError):
            await commission_store.list_masters_by_model("scooter")


class TestMasterStatus:
    """Master-level activation toggle"""

    @pytest.mark.asyncio
    async def test_toggle_keeps_rows_and_is_audited(self, commission_store, audit, catalogue):
        master = await commission_store.upsert_rates(
            catalogue["subdealer"]["_id"], catalogue["model"]["_id"], [_rate(catalogue["ex_showroom"], 5)]
        )

        updated = await commission_store.set_master_status(str(master["_id"]), False, actor="admin-1")

        assert updated["is_active"] is False
        assert updated["updated_by"] == "admin-1"
        assert updated["commission_rates"] == master["commission_rates"]
        assert updated["rate_history"] == master["rate_history"]
        logs = await audit.get_audit_logs(entity_type="COMMISSION_MASTER", entity_id=str(master["_id"]))
        assert sorted(log["action_type"] for log in logs) == ["CREATE", "STATUS_CHANGE"]

        assert (await commission_store.set_master_status(master["_id"], True))["is_active"] is True

    @pytest.mark.asyncio
    async def test_invalid_requests(self, commission_store, catalogue):
        master = await commission_store.upsert_rates(
            catalogue["subdealer"]["_id"], catalogue["model"]["_id"], [_rate(catalogue["ex_showroom"], 5)]
        )
        with pytest.raises(ValidationError):
            await commission_store.set_master_status(master["_id"], "false")
        with pytest.raises(NotFoundError):
            await commission_store.set_master_status(ObjectId(), False)
