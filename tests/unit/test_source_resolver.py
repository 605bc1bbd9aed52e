# =============================================================================
# tests/unit/test_source_resolver.py
# Unit Tests for SourceResolver
# =============================================================================

import json
import threading
from unittest.mock import MagicMock

import pytest

from clinic_core.errors import ExhaustedSourcesError, NoValidSourceError, SourceValidationError
from clinic_core.offline.source_resolver import (
    DataSource,
    SourceResolver,
    embedded_source,
    is_valid_payload,
    json_file_source,
    json_files_source,
    normalize_payload,
    remote_source,
    save_snapshot,
    store_source,
    validate_payload,
)


def failing(message="boom"):
    def fetch():
        raise RuntimeError(message)
    return fetch


class TestPayloadValidation:
    """Test shape checks and normalization"""

    def test_valid_payload(self, sample_patients):
        """A non-empty list of identified records passes"""
        validate_payload(sample_patients)
        assert is_valid_payload(sample_patients)

    @pytest.mark.parametrize("payload", [
        None,
        "patients",
        {"metadata": {}},
        {"patients": {}},
        {"patients": []},
        {"patients": ["p1", "p2"]},
        {"patients": [{"name": "no id"}, {"id": ""}]},
    ])
    def test_invalid_payloads(self, payload):
        """Each malformed shape is rejected"""
        with pytest.raises(SourceValidationError):
            validate_payload(payload)
        assert not is_valid_payload(payload)

    def test_custom_id_fields(self):
        """Records can be identified by an alternative field"""
        payload = {"patients": [{"patientId": "A-1"}]}

        assert not is_valid_payload(payload)
        assert is_valid_payload(payload, id_fields=("id", "patientId"))

    def test_bare_list_is_lifted(self):
        """A bare list becomes the collection with record count metadata"""
        normalized = normalize_payload([{"id": "p1"}, {"id": "p2"}])

        assert normalized["patients"] == [{"id": "p1"}, {"id": "p2"}]
        assert normalized["metadata"]["totalRecords"] == 2

    def test_data_envelope_is_lifted(self):
        """{"data": [...]} is renamed to the collection key"""
        normalized = normalize_payload({"data": [{"id": "p1"}], "metadata": {"v": 1}})

        assert normalized == {"patients": [{"id": "p1"}], "metadata": {"v": 1}}


class TestSourceResolverOrdering:
    """Test first-match-wins resolution"""

    def test_first_valid_source_wins(self, sample_patients):
        """Later sources are never consulted once one succeeds"""
        third = MagicMock(return_value=sample_patients)
        resolver = SourceResolver(timeout=1)

        resolved = resolver.resolve([
            DataSource("api", failing("offline")),
            DataSource("bundled", lambda: sample_patients),
            DataSource("cache", third),
        ])

        assert resolved.source_name == "bundled"
        assert resolved.records == sample_patients["patients"]
        third.assert_not_called()
        resolver.shutdown()

    def test_invalid_payload_treated_as_failure(self, sample_patients):
        """A source returning junk is skipped like one that raised"""
        resolver = SourceResolver(timeout=1)

        resolved = resolver.resolve([
            DataSource("api", lambda: {"patients": []}),
            DataSource("cache", lambda: sample_patients),
        ])

        assert resolved.source_name == "cache"
        assert [a[0] for a in resolver.last_attempts] == ["api", "cache"]
        resolver.shutdown()

    def test_payloads_never_merged(self):
        """Only the winning source contributes records"""
        resolver = SourceResolver(timeout=1)

        resolved = resolver.resolve([
            DataSource("a", lambda: [{"id": "1"}]),
            DataSource("b", lambda: [{"id": "2"}]),
        ])

        assert resolved.records == [{"id": "1"}]
        resolver.shutdown()

    def test_all_sources_fail(self):
        """Exhaustion lists every attempted source"""
        resolver = SourceResolver(timeout=1)

        with pytest.raises(ExhaustedSourcesError) as exc_info:
            resolver.resolve([
                DataSource("api", failing()),
                DataSource("bundled", lambda: None),
            ])

        assert exc_info.value.attempted == ["api", "bundled"]
        assert isinstance(exc_info.value, NoValidSourceError)
        assert resolver.last_source is None
        resolver.shutdown()

    def test_empty_source_list_raises(self):
        """Nothing to try means nothing to return"""
        with pytest.raises(ExhaustedSourcesError):
            SourceResolver(timeout=None).resolve([])

    def test_slow_source_times_out(self, sample_patients):
        """A hanging fetch counts as a failure and the next source is used"""
        release = threading.Event()

        def hang():
            release.wait(5)
            return sample_patients

        resolver = SourceResolver(timeout=0.1)
        try:
            resolved = resolver.resolve([
                DataSource("slow", hang),
                DataSource("fast", lambda: sample_patients),
            ])
        finally:
            release.set()
            resolver.shutdown()

        assert resolved.source_name == "fast"
        assert "exceeded" in resolver.get_load_info()["attempts"][0]["result"]

    def test_resolved_to_dataframe(self, sample_patients):
        """Winning collection converts to one row per record"""
        resolver = SourceResolver(timeout=None)
        df = resolver.resolve([DataSource("x", lambda: sample_patients)]).to_dataframe()

        assert len(df) == 2
        assert list(df["id"]) == ["p1", "p2"]


class TestSourceFactories:
    """Test the concrete DataSource builders"""

    def test_json_file_source(self, tmp_path, sample_patients):
        """A single bundled file is read as JSON"""
        path = tmp_path / "patients_backup.json"
        path.write_text(json.dumps(sample_patients), encoding="utf-8")

        assert json_file_source("bundled", path).fetch() == sample_patients

    def test_json_files_source_skips_missing_and_invalid(self, tmp_path, sample_patients):
        """The first parseable, valid file in order is used"""
        bad = tmp_path / "sample-patients-test.json"
        bad.write_text("{oops", encoding="utf-8")
        good = tmp_path / "patients_backup.json"
        good.write_text(json.dumps(sample_patients["patients"]), encoding="utf-8")

        source = json_files_source("bundled", [tmp_path / "missing.json", bad, good])
        payload = source.fetch()

        assert payload["patients"] == sample_patients["patients"]

    def test_json_files_source_all_missing(self, tmp_path):
        """No readable bundled file makes the source fail"""
        source = json_files_source("bundled", [tmp_path / "a.json"])

        with pytest.raises(OSError):
            source.fetch()

    def test_store_source_tries_keys_in_order(self, store, sample_patients):
        """Invalid cached values are passed over"""
        store.set("patientsData", {"patients": []})
        store.set("patients_backup", sample_patients["patients"])

        payload = store_source(store, ["patientsData", "patients_backup"]).fetch()

        assert payload["patients"] == sample_patients["patients"]

    def test_store_source_nothing_cached(self, store):
        """An empty cache makes the source fail"""
        with pytest.raises(LookupError):
            store_source(store, ["patientsData"]).fetch()

    def test_remote_source_wraps_list(self, sample_patients):
        """Remote listings are wrapped in the collection envelope"""
        client = MagicMock()
        client.list.return_value = sample_patients["patients"]

        payload = remote_source(client, "patient").fetch()

        client.list.assert_called_once_with("patient")
        assert payload["patients"] == sample_patients["patients"]

    def test_embedded_source(self, sample_patients):
        """Embedded data is returned by its factory"""
        assert embedded_source(lambda: sample_patients).name == "embedded"

    def test_save_snapshot_feeds_store_source(self, store, sample_patients):
        """A saved snapshot is usable on the next cold start"""
        resolver = SourceResolver(timeout=None)
        resolved = resolver.resolve([DataSource("api", lambda: sample_patients)])

        assert save_snapshot(store, "patientsData", resolved)
        saved = store.get("patientsData")
        assert saved["source"] == "api"
        assert "savedAt" in saved

        again = resolver.resolve([store_source(store, ["patientsData"])])
        assert again.records == sample_patients["patients"]
