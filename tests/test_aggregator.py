"""
Tests for per-target result aggregation.
"""
import pytest

from portaudit.aggregator import ResultAggregator
from portaudit.errors import AggregationError, PartialScanError
from portaudit.models import (
    Finding,
    Hop,
    LookupStatus,
    OSFamily,
    OSFingerprint,
    PortState,
    PortStatus,
    ScanStatus,
    ScanTechnique,
    ServiceGuess,
    Severity,
    VulnerabilityRecord,
)


def ssh_finding(port=22):
    record = VulnerabilityRecord("CVE-2016-6210", "openssh", "<7.4", 5.9)
    return Finding(host="127.0.0.1", port=port, protocol="tcp", record=record, confidence=0.76, severity=Severity.MEDIUM)


@pytest.fixture
def aggregator(target):
    return ResultAggregator(target, total=4)


class TestResultAggregator:
    def test_complete_report(self, aggregator, make_item):
        for port, status in [(443, PortStatus.FILTERED), (22, PortStatus.OPEN), (80, PortStatus.CLOSED)]:
            aggregator.record_state(PortState(make_item(port), status))
        aggregator.record_state(PortState(make_item(53, ScanTechnique.UDP), PortStatus.OPEN_FILTERED))
        guess = ServiceGuess(port=22, protocol="tcp", name="ssh", product="openssh", version="7.2", confidence=0.95)
        aggregator.record_service((22, "tcp"), guess)
        aggregator.add_findings([ssh_finding()])
        aggregator.set_vulnerability_status(LookupStatus.COMPLETE)
        aggregator.set_os(OSFingerprint(family=OSFamily.LINUX, confidence=0.9, samples=3))
        aggregator.set_hops([Hop(ttl=1, address="127.0.0.1", rtt=0.001)])

        report = aggregator.finalize()

        assert [(s.port, s.protocol) for s in report.port_states] == [(22, "tcp"), (53, "udp"), (80, "tcp"), (443, "tcp")]
        assert report.metadata.status is ScanStatus.COMPLETE
        assert not report.partial
        assert report.error is None
        assert (report.metadata.open, report.metadata.closed, report.metadata.filtered) == (1, 1, 2)
        assert report.services[(22, "tcp")] is guess
        assert report.risk.band is Severity.MEDIUM
        assert report.risk.score == 5.9
        assert report.os.family is OSFamily.LINUX
        assert len(report.hops) == 1
        assert set(report.metadata.techniques) == {ScanTechnique.CONNECT, ScanTechnique.UDP}

    def test_duplicate_state_rejected(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(22), PortStatus.OPEN))
        with pytest.raises(AggregationError):
            aggregator.record_state(PortState(make_item(22), PortStatus.CLOSED))

    def test_nothing_accepted_after_finalize(self, aggregator, make_item):
        aggregator.finalize("cancelled")
        with pytest.raises(AggregationError):
            aggregator.record_state(PortState(make_item(22), PortStatus.OPEN))
        with pytest.raises(AggregationError):
            aggregator.finalize()

    def test_findings_only_on_open_ports(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(22), PortStatus.CLOSED))
        with pytest.raises(AggregationError):
            aggregator.add_findings([ssh_finding()])
        with pytest.raises(AggregationError):
            aggregator.add_findings([ssh_finding(port=2222)])

    def test_services_only_on_open_ports(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(80), PortStatus.FILTERED))
        with pytest.raises(AggregationError):
            aggregator.record_service((80, "tcp"), None)

    def test_partial_report_carries_error(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(22), PortStatus.OPEN))
        aggregator.record_cancelled(make_item(80))
        report = aggregator.finalize("cancelled")
        assert report.partial
        assert isinstance(report.error, PartialScanError)
        assert report.error.completed == 1
        assert report.error.total == 4
        assert report.metadata.cancelled == 1
        assert report.metadata.attempted == 2
        assert [item.port for item in report.cancelled] == [80]

    def test_missing_results_mark_report_partial(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(22), PortStatus.OPEN))
        report = aggregator.finalize()
        assert report.partial
        assert report.metadata.partial_reason == "incomplete"

    def test_services_view_is_read_only(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(22), PortStatus.OPEN))
        aggregator.record_service((22, "tcp"), None)
        report = aggregator.finalize()
        with pytest.raises(TypeError):
            report.services[(22, "tcp")] = None

    def test_to_dict(self, aggregator, make_item):
        aggregator.record_state(PortState(make_item(22), PortStatus.OPEN, reason="syn-ack"))
        aggregator.add_findings([ssh_finding()])
        data = aggregator.finalize("deadline").to_dict()
        assert data["target"]["address"] == "127.0.0.1"
        assert data["ports"][0]["status"] == "open"
        assert data["findings"][0]["cve"] == "CVE-2016-6210"
        assert data["metadata"]["status"] == "partial"
        assert data["metadata"]["partial_reason"] == "deadline"
