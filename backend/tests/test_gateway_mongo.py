"""
MongoDB gateway: query shapes against mocked motor collections, plus a live
round trip that runs only when MONGO_URL points at a server.
"""
import asyncio
import os
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import OperationFailure

import config
from gateway import MongoGateway
from models import AnalysisResult, AnalysisType, User, UserRole, default_profile

MONGO_URL = os.environ.get('MONGO_URL', '')


def run(coro):
    return asyncio.run(coro)


def make_gateway():
    db = MagicMock()
    client = MagicMock()
    client.__getitem__.return_value = db
    return MongoGateway(client, "eagleview_test"), db


class FakeChangeStream:
    """Async context manager and iterator over canned change events."""

    def __init__(self, changes):
        self.changes = list(changes)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.changes:
            raise StopAsyncIteration
        return self.changes.pop(0)


class TestProfiles:
    def test_heal_inserts_only_when_absent_and_returns_stored_profile(self):
        gw, db = make_gateway()
        db.users.update_one = AsyncMock()
        db.users.find_one = AsyncMock(return_value={
            "id": "u1", "name": "Carol", "email": "c@example.com", "role": "CAREGIVER"
        })

        stored = run(gw.create_profile_if_absent(default_profile("u1", "c@example.com")))

        query, update = db.users.update_one.call_args.args
        assert query == {"id": "u1"}
        assert list(update) == ["$setOnInsert"]
        assert update["$setOnInsert"]["role"] == "SENIOR"
        assert db.users.update_one.call_args.kwargs == {"upsert": True}
        assert stored.role == UserRole.CAREGIVER

    def test_upsert_profile_merges_with_set(self):
        gw, db = make_gateway()
        db.users.update_one = AsyncMock()
        run(gw.upsert_profile(User(id="s1", name="Betty", email="b@example.com", caregiverId="c1")))

        query, update = db.users.update_one.call_args.args
        assert query == {"id": "s1"}
        assert update == {"$set": {
            "id": "s1", "name": "Betty", "email": "b@example.com", "role": "SENIOR", "caregiverId": "c1"
        }}

    def test_seniors_query_uses_back_reference(self):
        gw, db = make_gateway()
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[
            {"id": "s1", "name": "Betty", "email": "b@example.com", "role": "SENIOR", "caregiverId": "c1"}
        ])
        db.users.find = MagicMock(return_value=cursor)

        seniors = run(gw.find_seniors_of_caregiver("c1"))
        assert [s.id for s in seniors] == ["s1"]
        assert db.users.find.call_args.args == ({"caregiverId": "c1", "role": "SENIOR"}, {"_id": 0})


class TestPreferences:
    def test_upsert_sets_only_changed_fields(self):
        gw, db = make_gateway()
        db.preferences.update_one = AsyncMock()
        run(gw.upsert_preferences("s1", {"fontSize": "large"}))

        query, update = db.preferences.update_one.call_args.args
        assert query == {"id": "s1"}
        assert update == {"$set": {"fontSize": "large"}, "$setOnInsert": {"id": "s1"}}
        assert db.preferences.update_one.call_args.kwargs == {"upsert": True}

    def test_empty_changes_write_nothing(self):
        gw, db = make_gateway()
        db.preferences.update_one = AsyncMock()
        run(gw.upsert_preferences("s1", {}))
        assert not db.preferences.update_one.called

    def test_subscription_follows_change_stream(self):
        gw, db = make_gateway()
        db.preferences.find_one = AsyncMock(return_value={"id": "s1", "fontSize": "normal"})
        db.preferences.watch = MagicMock(return_value=FakeChangeStream([
            {"fullDocument": {"_id": "oid", "id": "s1", "fontSize": "large", "highContrast": True}}
        ]))

        async def scenario():
            seen = []
            unsubscribe = gw.subscribe_preferences("s1", seen.append)
            await asyncio.sleep(0.05)
            unsubscribe()
            return seen

        seen = run(scenario())
        assert [p.font_size for p in seen] == ["normal", "large"]
        assert seen[-1].high_contrast is True
        pipeline = db.preferences.watch.call_args.args[0]
        assert pipeline == [{"$match": {"fullDocument.id": "s1"}}]
        assert db.preferences.watch.call_args.kwargs == {"full_document": "updateLookup"}

    def test_standalone_server_falls_back_to_polling(self, monkeypatch):
        monkeypatch.setattr(config, "PREFS_POLL_SECONDS", 0.01)
        gw, db = make_gateway()
        docs = [
            {"id": "s1", "fontSize": "normal"},
            {"id": "s1", "fontSize": "normal"},
            {"id": "s1", "fontSize": "large"},
        ]

        async def find_one(*args, **kwargs):
            return docs.pop(0) if len(docs) > 1 else docs[0]

        db.preferences.find_one = find_one
        db.preferences.watch = MagicMock(side_effect=OperationFailure("The $changeStream stage is only supported on replica sets"))

        async def scenario():
            seen = []
            unsubscribe = gw.subscribe_preferences("s1", seen.append)
            await asyncio.sleep(0.1)
            unsubscribe()
            return seen

        assert [p.font_size for p in run(scenario())] == ["normal", "large"]

    def test_subscription_failure_reaches_error_callback(self):
        gw, db = make_gateway()
        db.preferences.find_one = AsyncMock(side_effect=RuntimeError("not authorized"))

        async def scenario():
            errors = []
            gw.subscribe_preferences("s1", lambda prefs: None, errors.append)
            await asyncio.sleep(0.01)
            return errors

        errors = run(scenario())
        assert [str(e) for e in errors] == ["not authorized"]


class TestHistory:
    def test_insert_omits_fraud_risk_for_non_documents(self):
        gw, db = make_gateway()
        db.history.insert_one = AsyncMock()
        result = AnalysisResult(userId="s1", performedBy="c1", type=AnalysisType.PILLBOX, fraudRisk="High")

        saved_id = run(gw.insert_history(result))
        doc = db.history.insert_one.call_args.args[0]
        assert saved_id == result.id
        assert "fraudRisk" not in doc
        assert doc["performedBy"] == "c1"

    def test_list_queries_target_and_resorts(self):
        gw, db = make_gateway()
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[
            {"id": str(ts), "userId": "s1", "performedBy": "s1", "timestamp": ts, "type": "FINE_PRINT"}
            for ts in (100, 300, 200)
        ])
        db.history.find = MagicMock(return_value=cursor)

        history = run(gw.list_history("s1", 50))
        assert [r.timestamp for r in history] == [300, 200, 100]
        assert db.history.find.call_args.args == ({"userId": "s1"}, {"_id": 0})
        cursor.sort.assert_called_once_with("timestamp", -1)
        cursor.to_list.assert_awaited_once_with(50)


@pytest.mark.skipif(not MONGO_URL, reason="MONGO_URL not set")
class TestLiveMongo:
    """Round trip against a real server in a throwaway database"""

    def test_profile_preferences_and_history(self):
        from motor.motor_asyncio import AsyncIOMotorClient

        async def scenario():
            client = AsyncIOMotorClient(MONGO_URL)
            db_name = f"eagleview_test_{uuid.uuid4().hex[:8]}"
            gw = MongoGateway(client, db_name)
            try:
                await gw.ensure_indexes()
                await gw.upsert_profile(User(id="c1", name="Carer", email="c@example.com", role=UserRole.CAREGIVER))
                kept = await gw.create_profile_if_absent(default_profile("c1", "c@example.com"))
                assert kept.role == UserRole.CAREGIVER

                await gw.upsert_preferences("s1", {"highContrast": True})
                await gw.upsert_preferences("s1", {"fontSize": "large"})
                prefs = await gw.get_preferences("s1")
                assert prefs.high_contrast is True
                assert prefs.font_size == "large"

                for ts in (100, 300, 200):
                    await gw.insert_history(AnalysisResult(
                        userId="s1", performedBy="c1", timestamp=ts, type=AnalysisType.PILLBOX
                    ))
                history = await gw.list_history("s1")
                assert [r.timestamp for r in history] == [300, 200, 100]
                raw = await client[db_name].history.find_one({"userId": "s1"}, {"_id": 0})
                assert "fraudRisk" not in raw
            finally:
                await client.drop_database(db_name)
                client.close()

        run(scenario())
