"""Unit tests for Info.plist merging."""

import plistlib
from pathlib import Path

import pytest

from macuniversal import (
    INTEGRITY_KEY,
    AppFile,
    AppFileType,
    AsarArchiver,
    AsarMode,
    IntegrityError,
    PlistMerger,
    PlistMismatchError,
    ValidationError,
    asar_header_hash,
    merge_integrity,
    plist_values_equal,
    read_plist,
    write_plist,
)

X64_ENTRY = {"algorithm": "SHA256", "hash": "a" * 64}
ARM64_ENTRY = {"algorithm": "SHA256", "hash": "b" * 64}

BASE_PLIST = {
    "CFBundleExecutable": "Demo",
    "CFBundleIdentifier": "com.example.demo",
    "LSMinimumSystemVersion": "10.13",
    "NSHighResolutionCapable": True,
}


@pytest.fixture
def entry_asar(tmp_path):
    """Create a small launcher archive."""
    src = tmp_path / "entry"
    src.mkdir()
    (src / "index.js").write_text("// launcher")
    path = tmp_path / "app.asar"
    AsarArchiver().create_package(src, path)
    return path


def make_apps(tmp_path, x64_plist, arm64_plist, fmt=plistlib.FMT_XML):
    apps = {}
    for side, value in (("x64", x64_plist), ("arm64", arm64_plist)):
        contents = tmp_path / side / "Demo.app" / "Contents"
        contents.mkdir(parents=True)
        (contents / "Info.plist").write_bytes(plistlib.dumps(value, fmt=fmt))
        apps[side] = tmp_path / side / "Demo.app"
    tmp_app = tmp_path / "tmp" / "Demo.app" / "Contents"
    tmp_app.mkdir(parents=True)
    return apps["x64"], apps["arm64"], tmp_path / "tmp" / "Demo.app"


FILES = [AppFile("Contents/Info.plist", AppFileType.INFO_PLIST)]


class TestPlistValuesEqual:
    """Tests for plist_values_equal()."""

    def test_equal_nested(self):
        """Test nested equal structures."""
        a = {"a": [1, {"b": "c"}], "d": b"\x00"}
        assert plist_values_equal(a, {"d": b"\x00", "a": [1, {"b": "c"}]})

    def test_bool_is_not_int(self):
        """Test that True and 1 are different values."""
        assert not plist_values_equal({"a": True}, {"a": 1})

    def test_list_order_matters(self):
        """Test that list order is significant."""
        assert not plist_values_equal([1, 2], [2, 1])

    def test_missing_key(self):
        """Test dictionaries with different keys."""
        assert not plist_values_equal({"a": 1}, {"a": 1, "b": 2})


class TestMergeIntegrity:
    """Tests for merge_integrity()."""

    def test_neither(self):
        """Test no integrity on either side gives an empty record."""
        assert merge_integrity(None, None) == {}

    def test_both(self):
        """Test the original entries are stored under tagged keys."""
        merged = merge_integrity(
            {"Resources/app.asar": X64_ENTRY},
            {"Resources/app.asar": ARM64_ENTRY},
        )
        assert merged == {
            "Resources/x64.app.asar": X64_ENTRY,
            "Resources/arm64.app.asar": ARM64_ENTRY,
        }

    @pytest.mark.parametrize(
        "x64, arm64",
        [({"Resources/app.asar": X64_ENTRY}, None), (None, {"Resources/app.asar": ARM64_ENTRY})],
    )
    def test_one_side(self, x64, arm64):
        """Test integrity on only one side is fatal."""
        with pytest.raises(IntegrityError, match="only one did"):
            merge_integrity(x64, arm64)

    def test_missing_app_asar_entry(self):
        """Test a record without Resources/app.asar is fatal."""
        with pytest.raises(IntegrityError, match="Resources/app.asar"):
            merge_integrity({"Resources/other.asar": X64_ENTRY}, {"Resources/app.asar": ARM64_ENTRY})


class TestReadWritePlist:
    """Tests for read_plist() and write_plist()."""

    def test_xml_round_trip(self, tmp_path):
        """Test XML plists are detected and written as XML."""
        path = tmp_path / "Info.plist"
        path.write_bytes(plistlib.dumps(BASE_PLIST))
        value, fmt = read_plist(path)
        assert value == BASE_PLIST
        assert fmt is plistlib.FMT_XML

        write_plist(path, value, fmt)
        assert path.read_bytes().startswith(b"<?xml")

    def test_binary_detected(self, tmp_path):
        """Test binary plists are detected."""
        path = tmp_path / "Info.plist"
        path.write_bytes(plistlib.dumps(BASE_PLIST, fmt=plistlib.FMT_BINARY))
        _, fmt = read_plist(path)
        assert fmt is plistlib.FMT_BINARY

    def test_top_level_must_be_dict(self, tmp_path):
        """Test a non-dictionary plist is rejected."""
        path = tmp_path / "Info.plist"
        path.write_bytes(plistlib.dumps(["not", "a", "dict"]))
        with pytest.raises(ValidationError):
            read_plist(path)


class TestPlistMerger:
    """Tests for PlistMerger.merge()."""

    def test_without_integrity(self, tmp_path, entry_asar):
        """Test only the launcher entry is added when no side has integrity."""
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, BASE_PLIST, BASE_PLIST)
        merged = PlistMerger().merge(tmp_app, FILES, x64_app, arm64_app, entry_asar)
        assert merged == ["Contents/Info.plist"]

        value, _ = read_plist(tmp_app / "Contents" / "Info.plist")
        assert value[INTEGRITY_KEY] == {
            "Resources/app.asar": {
                "algorithm": "SHA256",
                "hash": asar_header_hash(entry_asar),
            }
        }
        del value[INTEGRITY_KEY]
        assert value == BASE_PLIST

    def test_with_integrity(self, tmp_path, entry_asar):
        """Test three integrity entries are written."""
        x64 = dict(BASE_PLIST, **{INTEGRITY_KEY: {"Resources/app.asar": X64_ENTRY}})
        arm64 = dict(BASE_PLIST, **{INTEGRITY_KEY: {"Resources/app.asar": ARM64_ENTRY}})
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, x64, arm64)
        PlistMerger().merge(tmp_app, FILES, x64_app, arm64_app, entry_asar)

        value, _ = read_plist(tmp_app / "Contents" / "Info.plist")
        integrity = value[INTEGRITY_KEY]
        assert set(integrity) == {
            "Resources/app.asar",
            "Resources/x64.app.asar",
            "Resources/arm64.app.asar",
        }
        assert integrity["Resources/x64.app.asar"] == X64_ENTRY
        assert integrity["Resources/arm64.app.asar"] == ARM64_ENTRY
        assert integrity["Resources/app.asar"]["hash"] == asar_header_hash(entry_asar)

    def test_binary_format_preserved(self, tmp_path, entry_asar):
        """Test a binary plist is written back as binary."""
        x64_app, arm64_app, tmp_app = make_apps(
            tmp_path, BASE_PLIST, BASE_PLIST, fmt=plistlib.FMT_BINARY
        )
        PlistMerger().merge(tmp_app, FILES, x64_app, arm64_app, entry_asar)
        data = (tmp_app / "Contents" / "Info.plist").read_bytes()
        assert data.startswith(b"bplist00")

    def test_mismatch(self, tmp_path, entry_asar):
        """Test differing plists fail with the offending path."""
        arm64 = dict(BASE_PLIST, CFBundleIdentifier="com.example.other")
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, BASE_PLIST, arm64)
        with pytest.raises(PlistMismatchError) as excinfo:
            PlistMerger().merge(tmp_app, FILES, x64_app, arm64_app, entry_asar)
        assert excinfo.value.relative_path == "Contents/Info.plist"

    def test_integrity_ignored_in_comparison(self, tmp_path, entry_asar):
        """Test differing integrity hashes are not a mismatch."""
        x64 = dict(BASE_PLIST, **{INTEGRITY_KEY: {"Resources/app.asar": X64_ENTRY}})
        arm64 = dict(BASE_PLIST, **{INTEGRITY_KEY: {"Resources/app.asar": ARM64_ENTRY}})
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, x64, arm64)
        PlistMerger().merge(tmp_app, FILES, x64_app, arm64_app, entry_asar)

    def test_one_sided_integrity(self, tmp_path, entry_asar):
        """Test integrity on only one side is fatal."""
        x64 = dict(BASE_PLIST, **{INTEGRITY_KEY: {"Resources/app.asar": X64_ENTRY}})
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, x64, BASE_PLIST)
        with pytest.raises(IntegrityError):
            PlistMerger().merge(tmp_app, FILES, x64_app, arm64_app, entry_asar)

    def test_non_plist_files_ignored(self, tmp_path, entry_asar):
        """Test only INFO_PLIST entries are merged."""
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, BASE_PLIST, BASE_PLIST)
        files = [AppFile("Contents/PkgInfo", AppFileType.PLAIN)]
        assert PlistMerger().merge(tmp_app, files, x64_app, arm64_app, entry_asar) == []

    def test_relocated_plist(self, tmp_path, entry_asar):
        """Test a plist inside moved app code is written to its new home."""
        nested = "Contents/Resources/app/helper/Info.plist"
        x64_app, arm64_app, tmp_app = make_apps(tmp_path, BASE_PLIST, BASE_PLIST)
        for app in (x64_app, arm64_app):
            path = app / nested
            path.parent.mkdir(parents=True)
            path.write_bytes(plistlib.dumps(BASE_PLIST))
        (tmp_app / "Contents" / "Resources" / "x64.app" / "helper").mkdir(parents=True)
        files = [AppFile(nested, AppFileType.INFO_PLIST)]

        merged = PlistMerger().merge(
            tmp_app, files, x64_app, arm64_app, entry_asar, AsarMode.NO_ASAR
        )

        assert merged == [nested]
        relocated = tmp_app / "Contents" / "Resources" / "x64.app" / "helper" / "Info.plist"
        value, _ = read_plist(relocated)
        assert INTEGRITY_KEY in value
        assert not (tmp_app / "Contents" / "Resources" / "app").exists()
