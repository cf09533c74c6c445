"""Tests for the trivy scanner wrapper."""

import json

import pytest

from image_promoter.core.errors import NetworkError, ScanError, ValidationError
from image_promoter.registry.contracts import VulnerabilityScanner
from image_promoter.registry.models import Severity
from image_promoter.registry.scanner import TrivyScanner, parse_trivy_report
from tests._support.builders import SRC, digest

D1 = digest(1)

TRIVY_OUTPUT = {
    "SchemaVersion": 2,
    "Results": [
        {
            "Target": "debian 12",
            "Vulnerabilities": [
                {"VulnerabilityID": "CVE-2024-0001", "PkgName": "openssl", "Severity": "HIGH", "FixedVersion": "3.0.1"},
                {"VulnerabilityID": "CVE-2024-0002", "PkgName": "zlib", "Severity": "LOW"},
                {"VulnerabilityID": "CVE-2024-0001", "PkgName": "openssl", "Severity": "HIGH"},
            ],
        },
        {"Target": "app", "Vulnerabilities": None},
        {"Target": "go", "Vulnerabilities": [{"VulnerabilityID": "GHSA-1", "PkgName": "x", "Severity": "weird"}]},
    ],
}


class FakeProcess:
    def __init__(self, returncode: int, stdout: bytes = b"", stderr: bytes = b""):
        self.returncode = returncode
        self._out = (stdout, stderr)

    async def communicate(self):
        return self._out


def _fake_exec(process):
    calls = []

    async def _exec(*cmd, **kwargs):
        calls.append(cmd)
        return process

    return _exec, calls


class TestParse:
    def test_parses_and_dedupes(self):
        report = parse_trivy_report(TRIVY_OUTPUT, SRC, "foo", D1)
        assert [v.id for v in report.vulnerabilities] == ["CVE-2024-0001", "CVE-2024-0002", "GHSA-1"]
        assert report.vulnerabilities[0].fixed_version == "3.0.1"
        assert report.vulnerabilities[2].severity == Severity.UNKNOWN

    def test_empty(self):
        assert parse_trivy_report({}, SRC, "foo", D1).vulnerabilities == ()


class TestTrivyScanner:
    def test_is_scanner(self):
        assert isinstance(TrivyScanner(), VulnerabilityScanner)

    def test_command(self):
        cmd = TrivyScanner(extra_args=["--ignore-unfixed"]).command("r/i@d")
        assert cmd == ["trivy", "image", "--quiet", "--format", "json", "--ignore-unfixed", "r/i@d"]

    @pytest.mark.asyncio
    async def test_scan(self, monkeypatch):
        exec_, calls = _fake_exec(FakeProcess(0, json.dumps(TRIVY_OUTPUT).encode()))
        monkeypatch.setattr("asyncio.create_subprocess_exec", exec_)
        report = await TrivyScanner().scan(SRC, "foo", D1)
        assert calls[0][-1] == f"{SRC}/foo@{D1}"
        assert len(report.at_or_above(Severity.HIGH)) == 1

    @pytest.mark.asyncio
    async def test_failure_is_scan_error(self, monkeypatch):
        exec_, _ = _fake_exec(FakeProcess(1, stderr=b"FATAL image not found"))
        monkeypatch.setattr("asyncio.create_subprocess_exec", exec_)
        with pytest.raises(ScanError, match="image not found"):
            await TrivyScanner().scan(SRC, "foo", D1)

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, monkeypatch):
        exec_, _ = _fake_exec(FakeProcess(1, stderr=b"429 Too Many Requests"))
        monkeypatch.setattr("asyncio.create_subprocess_exec", exec_)
        with pytest.raises(NetworkError):
            await TrivyScanner().scan(SRC, "foo", D1)

    @pytest.mark.asyncio
    async def test_missing_binary(self, monkeypatch):
        async def _missing(*cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr("asyncio.create_subprocess_exec", _missing)
        with pytest.raises(ValidationError, match="not found on PATH"):
            await TrivyScanner(binary="no-such-trivy").scan(SRC, "foo", D1)

    @pytest.mark.asyncio
    async def test_bad_json(self, monkeypatch):
        exec_, _ = _fake_exec(FakeProcess(0, b"not json"))
        monkeypatch.setattr("asyncio.create_subprocess_exec", exec_)
        with pytest.raises(ScanError, match="not JSON"):
            await TrivyScanner().scan(SRC, "foo", D1)
