import hashlib
import sys

import pytest

from pinbuild.verify import (
    FailureKind,
    Requirements,
    SemVer,
    extract_version,
    satisfies,
    verify_artifact,
    write_checksum_files,
)


def _artifact(tmp_path, version="4.0.6", executable=True):
    path = tmp_path / "tailwindcss-freebsd-x64"
    path.write_text(f"#!{sys.executable}\nprint('tailwindcss v{version}')\n")
    path.chmod(0o755 if executable else 0o644)
    return path


class TestSemVer:
    def test_ordering(self):
        assert SemVer.parse("22.9.0") > SemVer.parse("22.8.12")
        assert SemVer.parse("4.0.10") > SemVer.parse("4.0.9")
        assert SemVer.parse("4.0.6") == SemVer(4, 0, 6)
        assert SemVer.parse("4.0.0-beta.2") < SemVer.parse("4.0.0")
        assert SemVer.parse("4.0.0-beta.2") < SemVer.parse("4.0.0-beta.10")

    @pytest.mark.parametrize("text, expected", [
        ("v22.9.0", "22.9.0"),
        ("tailwindcss v4.0.6", "4.0.6"),
        ("GNU Make 4.4.1\nBuilt for amd64", "4.4.1"),
        ("pnpm 9", "9.0.0"),
        ("4.0.0-alpha.1 (dev)", "4.0.0-alpha.1"),
    ])
    def test_extract(self, text, expected):
        assert str(extract_version(text)) == expected

    def test_no_version(self):
        assert extract_version("command not found") is None
        with pytest.raises(ValueError):
            SemVer.parse("latest")

    def test_satisfies(self):
        assert satisfies("v22.9.0", "22.9.0")
        assert satisfies("23.0.0", "22.9.0")
        assert not satisfies("v22.8.1", "22.9.0")


class TestVerifyArtifact:
    def test_good_artifact_passes(self, tmp_path):
        path = _artifact(tmp_path)
        report = verify_artifact(path, Requirements(min_version="4.0.6"))
        assert report.ok
        assert report.version == "4.0.6"
        assert report.checksums["sha256"] == hashlib.sha256(path.read_bytes()).hexdigest()
        assert report.checksums["sha512"] == hashlib.sha512(path.read_bytes()).hexdigest()

    def test_reports_every_failure_in_one_pass(self, tmp_path):
        path = _artifact(tmp_path, version="4.0.5", executable=False)
        report = verify_artifact(path, Requirements(min_version="4.0.6"))
        assert not report.ok
        assert report.kinds == [FailureKind.NOT_EXECUTABLE, FailureKind.VERSION_TOO_LOW]
        assert report.version == "4.0.5"
        # reading the version must not have touched the artifact itself
        assert not path.stat().st_mode & 0o111

    def test_checksum_mismatch_is_reported_with_other_failures(self, tmp_path):
        path = _artifact(tmp_path, version="4.0.5")
        report = verify_artifact(path, Requirements(checksums={"sha256": "0" * 64}, min_version="4.0.6"))
        assert report.kinds == [FailureKind.CHECKSUM_MISMATCH, FailureKind.VERSION_TOO_LOW]

    def test_expected_checksum_is_case_insensitive(self, tmp_path):
        path = _artifact(tmp_path)
        digest = hashlib.sha256(path.read_bytes()).hexdigest().upper()
        assert verify_artifact(path, Requirements(checksums={"sha256": digest})).ok

    def test_missing_artifact(self, tmp_path):
        report = verify_artifact(tmp_path / "nope")
        assert report.kinds == [FailureKind.NOT_FOUND]

    def test_unreadable_version(self, tmp_path):
        path = tmp_path / "quiet"
        path.write_text(f"#!{sys.executable}\nprint('hello')\n")
        path.chmod(0o755)
        report = verify_artifact(path, Requirements(min_version="1.0.0"))
        assert report.kinds == [FailureKind.VERSION_UNREADABLE]

    def test_checksum_files(self, tmp_path):
        path = _artifact(tmp_path)
        report = verify_artifact(path)
        written = write_checksum_files(report)
        assert [p.name for p in written] == [
            "tailwindcss-freebsd-x64.sha256",
            "tailwindcss-freebsd-x64.sha512",
        ]
        line = written[0].read_text()
        assert line == f"{report.checksums['sha256']}  tailwindcss-freebsd-x64\n"
