import sys
import threading
import unittest
from pathlib import Path
from unittest import mock

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shuttle_poller.poll_feed import (
    FEED_TIMEOUT_SECONDS,
    DataFeedResponse,
    FeedTransportError,
    LastResponseCache,
    fetch_feed,
    summarize_response,
)

DATA_DIR = Path(__file__).resolve().parent / "data"
FEED_URL = "https://feed.example.com/datafeed"


def _http_response(status_code=200, content=b"", headers=None):
    response = mock.Mock()
    response.status_code = status_code
    response.content = content
    response.headers = headers or {}
    return response


class FetchFeedTest(unittest.TestCase):
    @mock.patch("requests.get")
    def test_returns_body_status_and_headers(self, get):
        get.return_value = _http_response(200, b"Vehicle ID:1 eof", {"Content-Type": "text/plain"})

        response = fetch_feed(FEED_URL)

        get.assert_called_once_with(FEED_URL, timeout=FEED_TIMEOUT_SECONDS)
        self.assertEqual(FEED_TIMEOUT_SECONDS, 5.0)
        self.assertEqual(response.body, b"Vehicle ID:1 eof")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.ok)
        self.assertEqual(response.headers["content-type"], "text/plain")

    @mock.patch("requests.get")
    def test_bad_status_is_returned_not_raised(self, get):
        get.return_value = _http_response(502, b"Bad Gateway")

        response = fetch_feed(FEED_URL)

        self.assertEqual(response.status_code, 502)
        self.assertFalse(response.ok)

    @mock.patch("requests.get")
    def test_timeout_raises_transport_error(self, get):
        get.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(FeedTransportError):
            fetch_feed(FEED_URL)

    @mock.patch("requests.get")
    def test_connection_error_raises_transport_error(self, get):
        get.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(FeedTransportError) as ctx:
            fetch_feed(FEED_URL)
        self.assertIsInstance(ctx.exception.__cause__, requests.ConnectionError)


class DataFeedResponseTest(unittest.TestCase):
    def test_as_dict(self):
        response = DataFeedResponse(body=b"abc eof", status_code=200, headers={"Server": "iTRAK"})
        self.assertEqual(
            response.as_dict(),
            {"body": "abc eof", "status_code": 200, "headers": {"Server": "iTRAK"}},
        )

    def test_summarize_counts_good_and_bad_records(self):
        payload = (DATA_DIR / "itrak_feed_sample.txt").read_bytes()
        payload += b"Vehicle ID:15 lat:bad eof\r\n"
        response = DataFeedResponse(body=payload, status_code=200)

        with self.assertLogs("shuttle_poller.poll_feed", level="WARNING"):
            parsed, failed = summarize_response(response)

        self.assertEqual((parsed, failed), (4, 1))


class LastResponseCacheTest(unittest.TestCase):
    def test_empty_until_set(self):
        self.assertIsNone(LastResponseCache().get())

    def test_keeps_only_latest(self):
        cache = LastResponseCache()
        first = DataFeedResponse(body=b"1", status_code=200)
        second = DataFeedResponse(body=b"2", status_code=200)

        cache.set(first)
        cache.set(second)

        self.assertIs(cache.get(), second)

    def test_concurrent_writers_leave_one_complete_response(self):
        cache = LastResponseCache()
        responses = [DataFeedResponse(body=str(i).encode(), status_code=200) for i in range(50)]
        threads = [threading.Thread(target=cache.set, args=(r,)) for r in responses]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertIn(cache.get(), responses)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
