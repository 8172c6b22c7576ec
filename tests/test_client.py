import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from insider_ingest.sec.client import FetchFailed, RateLimiter, SecArchiveClient


def _response(status_code=200, *, json_data=None, text="", headers=None):
    r = MagicMock()
    r.status_code = status_code
    r.headers = headers or {}
    r.text = text
    if json_data is not None:
        r.json.return_value = json_data
    else:
        r.json.side_effect = ValueError("not json")
    return r


SUBMISSIONS = {
    "cik": "320193",
    "name": "Apple Inc.",
    "filings": {
        "recent": {
            "accessionNumber": ["0000320193-25-000002", "0000320193-25-000001"],
            "filingDate": ["2025-01-17", "2025-01-10"],
            "form": ["4", "10-K"],
            "primaryDocument": ["xslF345X05/wk-form4_1.xml", "aapl-20241228.htm"],
        }
    },
}


class _FakeTime:
    def __init__(self):
        self.t = 0.0
        self.sleeps = []

    def clock(self):
        return self.t

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.t += seconds


def test_rate_limiter_spaces_requests_end_to_start_across_threads():
    limiter = RateLimiter(0.05)
    spans = []
    lock = threading.Lock()

    def request():
        start = time.monotonic()
        time.sleep(0.01)
        end = time.monotonic()
        with lock:
            spans.append((start, end))

    threads = [threading.Thread(target=lambda: limiter.call(request)) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    spans.sort()
    assert len(spans) == 6
    for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
        assert next_start - prev_end >= 0.045


def test_rate_limiter_first_call_does_not_wait_and_penalty_applies_once():
    ft = _FakeTime()
    limiter = RateLimiter(0.1, clock=ft.clock, sleep=ft.sleep)

    limiter.call(lambda: None)
    assert ft.sleeps == []

    limiter.call(lambda: None)
    assert ft.sleeps == [pytest.approx(0.1)]

    limiter.penalize(1.0)
    limiter.call(lambda: None)
    assert ft.sleeps[-1] == pytest.approx(1.0)

    limiter.call(lambda: None)
    assert ft.sleeps[-1] == pytest.approx(0.1)


def test_rate_limiter_records_checkpoint_even_when_request_fails():
    ft = _FakeTime()
    limiter = RateLimiter(0.1, clock=ft.clock, sleep=ft.sleep)

    def boom():
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        limiter.call(boom)
    limiter.call(lambda: None)
    assert ft.sleeps == [pytest.approx(0.1)]


def test_list_filings_sends_compliance_headers_and_parses_listing(cfg):
    session = MagicMock()
    session.get.return_value = _response(json_data=SUBMISSIONS)
    client = SecArchiveClient(cfg, session=session, rate_limiter=RateLimiter(0.0))

    out = client.list_filings("CIK-0000320193")

    url = session.get.call_args.args[0]
    kwargs = session.get.call_args.kwargs
    assert url == f"{cfg.SEC_SUBMISSIONS_BASE_URL}/CIK0000320193.json"
    assert kwargs["headers"]["User-Agent"] == cfg.SEC_USER_AGENT
    assert "Accept" in kwargs["headers"] and "Accept-Encoding" in kwargs["headers"]
    assert kwargs["timeout"] == cfg.SEC_REQUEST_TIMEOUT_SECONDS

    assert [s.accession_number for s in out] == ["0000320193-25-000002", "0000320193-25-000001"]
    assert out[0].entity_id == "0000320193"
    assert out[0].form_type == "4"
    assert out[0].filing_date == "2025-01-17"
    assert out[0].entity_name == "Apple Inc."


def test_low_quota_header_penalizes_next_request(cfg):
    session = MagicMock()
    session.get.return_value = _response(json_data=SUBMISSIONS, headers={"X-RateLimit-Remaining": "3"})
    limiter = RateLimiter(0.0)
    limiter.penalize = MagicMock()
    client = SecArchiveClient(cfg, session=session, rate_limiter=limiter)

    client.list_filings("320193")
    limiter.penalize.assert_called_once_with(cfg.SEC_QUOTA_BACKOFF_SECONDS)


def test_healthy_quota_header_does_not_penalize(cfg):
    session = MagicMock()
    session.get.return_value = _response(json_data=SUBMISSIONS, headers={"X-RateLimit-Remaining": "50"})
    limiter = RateLimiter(0.0)
    limiter.penalize = MagicMock()
    client = SecArchiveClient(cfg, session=session, rate_limiter=limiter)

    client.list_filings("320193")
    limiter.penalize.assert_not_called()


def test_non_2xx_raises_fetch_failed_without_retry(cfg):
    session = MagicMock()
    session.get.return_value = _response(503, text="Service Unavailable")
    client = SecArchiveClient(cfg, session=session, rate_limiter=RateLimiter(0.0))

    with pytest.raises(FetchFailed) as ei:
        client.fetch_document("320193", "0000320193-25-000002", "wk-form4_1.xml")
    assert ei.value.status_code == 503
    assert session.get.call_count == 1


def test_timeout_raises_fetch_failed(cfg):
    session = MagicMock()
    session.get.side_effect = requests.Timeout("slow")
    client = SecArchiveClient(cfg, session=session, rate_limiter=RateLimiter(0.0))

    with pytest.raises(FetchFailed) as ei:
        client.list_filings("320193")
    assert ei.value.status_code is None
    assert "CIK0000320193.json" in ei.value.url


def test_connection_error_raises_fetch_failed(cfg):
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("refused")
    client = SecArchiveClient(cfg, session=session, rate_limiter=RateLimiter(0.0))

    with pytest.raises(FetchFailed):
        client.fetch_document("320193", "0000320193-25-000002", "wk-form4_1.xml")


def test_non_json_listing_raises_fetch_failed(cfg):
    session = MagicMock()
    session.get.return_value = _response(text="<html>maintenance</html>")
    client = SecArchiveClient(cfg, session=session, rate_limiter=RateLimiter(0.0))

    with pytest.raises(FetchFailed):
        client.list_filings("320193")


def test_document_url_uses_raw_path(cfg):
    client = SecArchiveClient(cfg, session=MagicMock(), rate_limiter=RateLimiter(0.0))
    url = client.document_url("0000320193", "0000320193-25-000002", "xslF345X05/wk-form4_1.xml")
    assert url == f"{cfg.SEC_ARCHIVES_BASE_URL}/320193/000032019325000002/wk-form4_1.xml"


def test_fetch_document_returns_body(cfg):
    session = MagicMock()
    session.get.return_value = _response(text="<ownershipDocument/>")
    client = SecArchiveClient(cfg, session=session, rate_limiter=RateLimiter(0.0))

    assert client.fetch_document("320193", "0000320193-25-000002", "wk-form4_1.xml") == "<ownershipDocument/>"


def test_list_filings_rejects_invalid_entity(cfg):
    client = SecArchiveClient(cfg, session=MagicMock(), rate_limiter=RateLimiter(0.0))
    with pytest.raises(ValueError):
        client.list_filings("not-a-cik")
