"""Tests for commit-message driven versioning."""

import pytest

from drawio_pipeline.store import MappingFileStore, MemoryStore, PersistenceError
from drawio_pipeline.versioning import BumpKind, Version, VersionLedger, classify


class TestClassify:

    @pytest.mark.parametrize("message", ["Added new flow", "ADDED box", "brand NEW", "renewed layout", "added"])
    def test_major_keywords(self, message):
        assert classify(message) is BumpKind.MAJOR

    @pytest.mark.parametrize("message", ["Fixed typo", "Update colours", "", None])
    def test_everything_else_is_minor(self, message):
        assert classify(message) is BumpKind.MINOR


class TestVersion:

    def test_parse_and_format(self):
        assert Version.parse("2.3") == Version(2, 3)
        assert str(Version(2, 3)) == "2.3"

    def test_parse_empty_is_zero(self):
        assert Version.parse(None) == Version(0, 0)
        assert Version.parse("") == Version(0, 0)
        assert Version.parse("2") == Version(2, 0)

    @pytest.mark.parametrize("text", ["x.y", "1.2.3", "1.", "-1.0"])
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(ValueError):
            Version.parse(text)

    def test_major_bump_resets_minor(self):
        assert Version(1, 4).bump(BumpKind.MAJOR) == Version(2, 0)

    def test_minor_bump(self):
        assert Version(1, 4).bump(BumpKind.MINOR) == Version(1, 5)


class TestVersionLedger:

    def test_first_major_is_1_0(self):
        assert VersionLedger(MemoryStore()).next_version("004", "Added new flow") == "1.0"

    def test_first_minor_is_0_1(self):
        assert VersionLedger(MemoryStore()).next_version("004", "Fixed typo") == "0.1"

    def test_existing_version_bumps(self):
        store = MemoryStore({"004": "1.0"})
        assert VersionLedger(store).next_version("004", "Fixed typo") == "1.1"
        assert store.get("004") == "1.1"

    def test_versions_strictly_increase(self):
        ledger = VersionLedger(MemoryStore())
        messages = ["Fix", "Added x", "tweak", "tweak", "New page", "cleanup"]
        versions = [Version.parse(ledger.next_version("007", m)) for m in messages]
        assert all(a < b for a, b in zip(versions, versions[1:]))

    def test_identifiers_are_independent(self):
        ledger = VersionLedger(MemoryStore())
        ledger.next_version("001", "Added")
        assert ledger.next_version("70", "Fix") == "0.1"
        assert ledger.current("001") == Version(1, 0)

    def test_persisted_to_version_file(self, tmp_path):
        version_file = tmp_path / ".versions"
        version_file.write_text("70:2.3\n")
        ledger = VersionLedger(MappingFileStore(version_file))

        ledger.next_version("004", "Added new flow")
        ledger.next_version("70", "Fixed typo")

        lines = sorted(version_file.read_text().splitlines())
        assert lines == ["004:1.0", "70:2.4"]

    def test_corrupt_stored_version_is_not_reset(self):
        store = MemoryStore({"004": "1.2.3"})
        ledger = VersionLedger(store)

        with pytest.raises(PersistenceError):
            ledger.next_version("004", "Fixed typo")
        with pytest.raises(PersistenceError):
            ledger.current("004")
        assert store.get("004") == "1.2.3"
