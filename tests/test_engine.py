"""
Protocol engine tests: the four operations, their guards and invariants.
"""

import plistlib
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest

from enroll.core.config import EnrollConfig
from enroll.core.engine import MANIFEST_UUID_HEADER, OperationOutcome, ProtocolEngine
from enroll.core.errors import (
    ConflictError,
    EnrollError,
    NotFoundError,
    SecurityError,
    ServerError,
    ValidationError,
)
from enroll.core.schema import CallerInfo, EnrollRequest
from enroll.core.store import RecordStore
from util.logging import AuditLogger, StructuredLogger

TOKEN = "550e8400-e29b-41d4-a716-446655440000"
OTHER_TOKEN = "6ba7b810-9dad-11d1-80b4-00c04fd430c8"


class FakeClock:
    """Controllable clock for timestamp assertions."""

    def __init__(self, start: float = 1700000000):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 60) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    root = tmp_path / "manifests"
    root.mkdir()
    return EnrollConfig(manifests_path=root)


@pytest.fixture
def engine(config, clock):
    logger = MagicMock(spec=StructuredLogger)
    store = RecordStore(config.manifests_path, logger=logger)
    return ProtocolEngine(config, store, logger=logger, clock=clock)


@pytest.fixture
def caller():
    return CallerInfo(remote_addr="10.0.0.5", user_agent="munki-enroll/2.0")


def enroll_request(**overrides):
    params = dict(function="enroll", record_id="C02TEST1", display_name="Test-Mac", identity_token=TOKEN)
    params.update(overrides)
    return EnrollRequest(**params)


def stored_bytes(engine, record_id="C02TEST1"):
    return (engine.store.root / record_id).read_bytes()


class TestEnroll:
    """Absent -> Present."""

    def test_enroll_defaults(self, engine, caller):
        result = engine.enroll(enroll_request(), caller)

        assert isinstance(result, OperationOutcome)
        assert result.status_code == 201
        assert result.data["catalogs"] == ["production"]
        assert result.data["manifests"] == ["Management/Mandatory"]

        record = engine.store.load("C02TEST1")
        assert record.catalogs == ("production",)
        assert record.included_refs == ("Management/Mandatory",)
        assert record.identity_token == TOKEN
        assert record.created_at == record.modified_at == record.checked_in_at
        assert record.created_by == "IP:10.0.0.5 | UA:munki-enroll/2.0"

    def test_enroll_twice_conflicts(self, engine, caller):
        engine.enroll(enroll_request(), caller)
        before = stored_bytes(engine)

        result = engine.enroll(enroll_request(display_name="Other"), caller)

        assert isinstance(result, ConflictError)
        assert result.status_code == 409
        assert stored_bytes(engine) == before

    @pytest.mark.parametrize("overrides", [
        {"record_id": ""},
        {"display_name": None},
        {"display_name": "<>!!"},
        {"identity_token": None},
        {"identity_token": "not-a-uuid"},
    ])
    def test_enroll_missing_required(self, engine, caller, overrides):
        result = engine.enroll(enroll_request(**overrides), caller)

        assert isinstance(result, ValidationError)
        assert result.log_result == "FAILURE - NOT ENOUGH ARGUMENTS"
        assert engine.store.list_ids() == []

    def test_enroll_self_inclusion_rejected(self, engine, caller):
        result = engine.enroll(enroll_request(included_manifests={1: "C02TEST1"}), caller)

        assert isinstance(result, ValidationError)
        assert result.log_result == "FAILURE - RECURSIVE MANIFEST"
        assert not engine.store.exists("C02TEST1")

    def test_enroll_self_inclusion_in_later_slot_rejected(self, engine, caller):
        result = engine.enroll(enroll_request(included_manifests={3: "C02TEST1"}), caller)
        assert isinstance(result, ValidationError)

    def test_invalid_catalogs_dropped_and_default_used(self, engine, caller):
        result = engine.enroll(enroll_request(catalogs={1: "bogus", 2: "nightly"}), caller)
        assert result.data["catalogs"] == ["production"]

    def test_catalog_order_preserved(self, engine, caller):
        result = engine.enroll(enroll_request(catalogs={1: "testing", 2: "bogus", 3: "production"}), caller)
        assert result.data["catalogs"] == ["testing", "production"]

    def test_manifest1_defaults_when_only_later_slots_given(self, engine, caller):
        result = engine.enroll(enroll_request(included_manifests={2: "Site/Lab", 4: "Dept/Art"}), caller)
        assert result.data["manifests"] == ["Management/Mandatory", "Site/Lab", "Dept/Art"]

    def test_invalid_manifest_dropped(self, engine, caller):
        result = engine.enroll(enroll_request(included_manifests={1: "Site/Lab", 2: "../../etc;"}), caller)
        assert result.data["manifests"] == ["Site/Lab"]

    @pytest.mark.parametrize("record_id", ["../evil", "/etc/passwd", "C02 TEST", "a/b"])
    def test_unsafe_record_id_rejected_without_store_access(self, engine, caller, record_id):
        with patch.object(engine.store, "create") as create:
            result = engine.enroll(enroll_request(record_id=record_id), caller)
        assert isinstance(result, ValidationError)
        create.assert_not_called()

    def test_concurrent_enrolls_single_winner(self, engine, caller):
        workers = 10
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            return engine.enroll(enroll_request(), caller).status_code

        with ThreadPoolExecutor(max_workers=workers) as pool:
            codes = list(pool.map(attempt, range(workers)))

        assert codes.count(201) == 1
        assert codes.count(409) == workers - 1
        assert engine.store.list_ids() == ["C02TEST1"]

    def test_write_failure_is_server_error(self, engine, caller):
        with patch.object(engine.store, "create", side_effect=OSError("disk full")):
            result = engine.enroll(enroll_request(), caller)
        assert isinstance(result, ServerError)
        assert result.detail == "disk full"
        assert "disk full" not in result.message


class TestUpdate:
    """Present -> Present with merge."""

    @pytest.fixture(autouse=True)
    def enrolled(self, engine, caller):
        engine.enroll(enroll_request(catalogs={1: "production"}, included_manifests={1: "Site/Lab"}), caller)

    def test_update_missing_record(self, engine, caller):
        result = engine.update(EnrollRequest(function="update", record_id="UNKNOWN"), caller)
        assert isinstance(result, NotFoundError)

    def test_update_replaces_supplied_fields_only(self, engine, caller, clock):
        clock.advance()
        result = engine.update(
            EnrollRequest(function="update", record_id="C02TEST1", display_name="Renamed", identity_token=TOKEN),
            caller,
        )
        assert result.status_code == 200

        record = engine.store.load("C02TEST1")
        assert record.display_name == "Renamed"
        assert record.catalogs == ("production",)
        assert record.included_refs == ("Site/Lab",)
        assert record.modified_at.epoch == clock.now
        assert record.checked_in_at.epoch == clock.now
        assert record.created_at.epoch == clock.now - 60

    def test_update_without_changes_keeps_modified(self, engine, caller, clock):
        created = engine.store.load("C02TEST1").modified_at
        clock.advance()

        engine.update(EnrollRequest(function="update", record_id="C02TEST1", display_name="Test-Mac"), caller)

        record = engine.store.load("C02TEST1")
        assert record.modified_at == created
        assert record.checked_in_at.epoch == clock.now
        assert record.modified_by == caller.audit_string()

    def test_update_mismatch_rejected_and_untouched(self, engine, caller, clock):
        before = stored_bytes(engine)
        clock.advance()

        result = engine.update(
            EnrollRequest(function="update", record_id="C02TEST1", display_name="Hijack", identity_token=OTHER_TOKEN),
            caller,
        )

        assert isinstance(result, SecurityError)
        assert result.status_code == 403
        assert stored_bytes(engine) == before

    def test_update_token_case_insensitive(self, engine, caller):
        result = engine.update(
            EnrollRequest(function="update", record_id="C02TEST1", identity_token=TOKEN.upper()), caller
        )
        assert result.status_code == 200
        assert engine.store.load("C02TEST1").identity_token == TOKEN

    def test_update_replaces_catalogs_in_order(self, engine, caller):
        engine.update(
            EnrollRequest(function="update", record_id="C02TEST1", catalogs={1: "testing", 2: "development"}),
            caller,
        )
        assert engine.store.load("C02TEST1").catalogs == ("testing", "development")

    def test_update_with_only_invalid_catalogs_keeps_stored(self, engine, caller):
        engine.update(EnrollRequest(function="update", record_id="C02TEST1", catalogs={1: "bogus"}), caller)
        assert engine.store.load("C02TEST1").catalogs == ("production",)

    def test_update_self_inclusion_rejected(self, engine, caller):
        before = stored_bytes(engine)
        result = engine.update(
            EnrollRequest(function="update", record_id="C02TEST1", included_manifests={2: "C02TEST1"}), caller
        )
        assert isinstance(result, ValidationError)
        assert stored_bytes(engine) == before

    def test_update_preserves_managed_installs(self, engine, caller):
        path = engine.store.root / "C02TEST1"
        data = plistlib.loads(path.read_bytes())
        data["managed_installs"] = ["Firefox", "Slack"]
        path.write_bytes(plistlib.dumps(data))

        engine.update(EnrollRequest(function="update", record_id="C02TEST1", display_name="Renamed"), caller)

        assert plistlib.loads(path.read_bytes())["managed_installs"] == ["Firefox", "Slack"]


class TestUpdateTokenAdoption:
    """Records without a stored token."""

    @pytest.fixture(autouse=True)
    def tokenless(self, engine):
        (engine.store.root / "LEGACY").write_bytes(plistlib.dumps({
            "catalogs": ["production"],
            "display_name": "Legacy-Mac",
            "included_manifests": ["Management/Mandatory"],
            "managed_installs": [],
            "date_created": 1600000000,
        }))

    def test_adopts_supplied_token(self, engine, caller):
        result = engine.update(EnrollRequest(function="update", record_id="LEGACY", identity_token=TOKEN), caller)
        assert result.status_code == 200
        record = engine.store.load("LEGACY")
        assert record.identity_token == TOKEN
        assert record.notes == TOKEN

    def test_no_token_either_side_proceeds(self, engine, caller):
        result = engine.update(EnrollRequest(function="update", record_id="LEGACY", display_name="Renamed"), caller)
        assert result.status_code == 200
        record = engine.store.load("LEGACY")
        assert record.identity_token is None
        assert record.display_name == "Renamed"

    def test_adopted_token_then_locked(self, engine, caller):
        engine.update(EnrollRequest(function="update", record_id="LEGACY", identity_token=TOKEN), caller)
        result = engine.update(EnrollRequest(function="update", record_id="LEGACY", identity_token=OTHER_TOKEN), caller)
        assert isinstance(result, SecurityError)
        assert engine.store.load("LEGACY").identity_token == TOKEN

    def test_fetch_never_adopts(self, engine, caller):
        result = engine.fetch(EnrollRequest(function="fetch", record_id="LEGACY", identity_token=TOKEN), caller)
        assert isinstance(result, SecurityError)
        assert result.log_result == "FAILURE - FETCH NO UUID IN MANIFEST"
        assert engine.store.load("LEGACY").identity_token is None


class TestCheckin:
    def test_checkin_missing_record(self, engine, caller):
        result = engine.checkin(EnrollRequest(function="checkin", record_id="UNKNOWN"), caller)
        assert isinstance(result, NotFoundError)
        assert result.status_code == 404

    def test_checkin_only_moves_checkin_time(self, engine, caller, clock):
        engine.enroll(enroll_request(), caller)
        before = engine.store.load("C02TEST1")
        clock.advance(120)

        result = engine.checkin(
            EnrollRequest(function="checkin", record_id="C02TEST1", display_name="Ignored", identity_token=OTHER_TOKEN),
            CallerInfo(remote_addr="10.9.9.9"),
        )

        after = engine.store.load("C02TEST1")
        assert result.status_code == 200
        assert result.data["last_checkin"] == after.checked_in_at.human
        assert after.checked_in_at.epoch == clock.now
        assert {**after.__dict__, "checked_in_at": None} == {**before.__dict__, "checked_in_at": None}


class TestFetch:
    @pytest.fixture(autouse=True)
    def enrolled(self, engine, caller):
        engine.enroll(enroll_request(), caller)

    def test_fetch_returns_document_and_header(self, engine, caller, clock):
        clock.advance(30)
        result = engine.fetch(EnrollRequest(function="fetch", record_id="C02TEST1", identity_token=TOKEN), caller)

        assert result.status_code == 200
        assert result.headers[MANIFEST_UUID_HEADER] == TOKEN
        assert result.headers["Content-Disposition"] == 'inline; filename="C02TEST1"'
        data = plistlib.loads(result.document)
        assert data["display_name"] == "Test-Mac"
        assert data["date_checkin"] == clock.now
        assert result.document == stored_bytes(engine)

    def test_fetch_is_idempotent_except_checkin(self, engine, caller, clock):
        request = EnrollRequest(function="fetch", record_id="C02TEST1", identity_token=TOKEN)
        first = plistlib.loads(engine.fetch(request, caller).document)
        clock.advance(5)
        second = plistlib.loads(engine.fetch(request, caller).document)

        assert second["date_checkin"] >= first["date_checkin"]
        for key in ("date_checkin", "date_checkin_human"):
            first.pop(key)
            second.pop(key)
        assert first == second

    def test_fetch_requires_token(self, engine, caller):
        result = engine.fetch(EnrollRequest(function="fetch", record_id="C02TEST1"), caller)
        assert isinstance(result, ValidationError)
        assert result.log_result == "FAILURE - FETCH MISSING UUID"

    def test_fetch_mismatch_leaks_nothing(self, engine, caller):
        before = stored_bytes(engine)
        result = engine.fetch(
            EnrollRequest(function="fetch", record_id="C02TEST1", identity_token=OTHER_TOKEN), caller
        )

        assert isinstance(result, SecurityError)
        assert "Test-Mac" not in str(result.to_envelope())
        assert TOKEN not in str(result.to_envelope())
        assert stored_bytes(engine) == before

    def test_fetch_missing_record(self, engine, caller):
        result = engine.fetch(EnrollRequest(function="fetch", record_id="UNKNOWN", identity_token=TOKEN), caller)
        assert isinstance(result, NotFoundError)


class TestDispatch:
    def test_unknown_function_runs_enroll(self, engine, caller):
        result = engine.dispatch(enroll_request(function="bogus"), caller)
        assert result.status_code == 201

    def test_outcome_logged_and_audited(self, config, clock, caller):
        logger = MagicMock(spec=StructuredLogger)
        audit = MagicMock(spec=AuditLogger)
        engine = ProtocolEngine(config, RecordStore(config.manifests_path, logger=logger),
                                logger=logger, audit=audit, clock=clock)

        engine.dispatch(enroll_request(catalogs={1: "testing"}), caller)
        engine.dispatch(enroll_request(), caller)

        results = [c.args[0] for c in audit.log.call_args_list]
        assert results == ["SUCCESS - RECORD CREATED", "FAILURE - EXISTING MANIFEST"]
        first_fields = audit.log.call_args_list[0].kwargs
        assert first_fields["record_id"] == "C02TEST1"
        assert first_fields["catalogs"] == ["testing"]
        assert first_fields["ip"] == "10.0.0.5"

        statuses = [c.args[2] for c in logger.log_record_operation.call_args_list]
        assert statuses == ["success", "failed"]

    def test_errors_are_returned_not_raised(self, engine, caller):
        result = engine.dispatch(EnrollRequest(function="checkin", record_id="UNKNOWN"), caller)
        assert isinstance(result, EnrollError)

    @pytest.mark.parametrize("date_created", [1e300, float("nan"), -5])
    def test_corrupt_timestamp_is_audited_server_error(self, config, clock, caller, date_created):
        audit = MagicMock(spec=AuditLogger)
        logger = MagicMock(spec=StructuredLogger)
        engine = ProtocolEngine(config, RecordStore(config.manifests_path, logger=logger),
                                logger=logger, audit=audit, clock=clock)
        (config.manifests_path / "C02TEST1").write_bytes(
            plistlib.dumps({"display_name": "Test-Mac", "date_created": date_created})
        )

        result = engine.dispatch(EnrollRequest(function="checkin", record_id="C02TEST1"), caller)

        assert isinstance(result, ServerError)
        assert "date_created" in result.detail
        audit.log.assert_called_once()
        assert audit.log.call_args.args[0] == "FAILURE - EXCEPTION"
