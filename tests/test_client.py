from unittest import mock

import pytest
import requests

from eduplatform import client as client_module
from eduplatform.client import BooksClient, BooksClientError


def _response(status_code: int, payload=None, text: str | None = None) -> mock.Mock:
    response = mock.Mock(spec=requests.Response)
    response.status_code = status_code
    if text is not None:
        response.json.side_effect = ValueError(text)
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(client_module.time, "sleep", calls.append)
    return calls


class TestFetchBooks:
    def test_returns_data_and_sends_params(self, session, sleeps):
        session.get.return_value = _response(200, {"data": [{"id": 1}]})
        books = BooksClient("http://api.test/", session=session, token="abc")

        assert books.fetch_books(role="author", user_id=7) == [{"id": 1}]
        session.get.assert_called_once_with(
            "http://api.test/api/books",
            params={"role": "author", "userId": 7},
            headers={"Authorization": "Bearer abc"},
            timeout=10,
        )
        assert sleeps == []
        assert books.fetching is False

    def test_timeout_retries_once(self, session, sleeps):
        session.get.side_effect = [requests.exceptions.Timeout("slow"), _response(200, {"data": []})]
        books = BooksClient("http://api.test", session=session, timeout=10, retry_delay=5)

        assert books.fetch_books() == []
        assert session.get.call_count == 2
        assert sleeps == [5]

    def test_second_timeout_gives_up(self, session, sleeps):
        session.get.side_effect = requests.exceptions.Timeout("slow")
        books = BooksClient("http://api.test", session=session)

        with pytest.raises(BooksClientError):
            books.fetch_books()
        assert session.get.call_count == 2
        assert books.fetching is False

    def test_connection_error_is_not_retried(self, session, sleeps):
        session.get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(BooksClientError):
            BooksClient("http://api.test", session=session).fetch_books()
        assert session.get.call_count == 1
        assert sleeps == []

    def test_error_payload_is_surfaced(self, session, sleeps):
        session.get.return_value = _response(500, {"error": "Failed to fetch books"})
        with pytest.raises(BooksClientError, match="Failed to fetch books"):
            BooksClient("http://api.test", session=session).fetch_books()

    def test_detail_payload_is_surfaced(self, session, sleeps):
        session.get.return_value = _response(403, {"detail": "Insufficient role privileges"})
        with pytest.raises(BooksClientError, match="Insufficient role privileges"):
            BooksClient("http://api.test", session=session).fetch_books(role="moderator")

    def test_non_json_response(self, session, sleeps):
        session.get.return_value = _response(502, text="<html>Bad gateway</html>")
        with pytest.raises(BooksClientError, match="502"):
            BooksClient("http://api.test", session=session).fetch_books()

    def test_concurrent_fetch_is_skipped(self, session, sleeps):
        books = BooksClient("http://api.test", session=session)
        books.fetching = True

        assert books.fetch_books() is None
        session.get.assert_not_called()

    def test_fetch_from_running_app(self, client, author, make_book, publish):
        book = make_book(author, "Published")
        publish(author, book["id"])
        make_book(author, "Unpublished")

        books = BooksClient("http://testserver", session=client)
        assert [b["title"] for b in books.fetch_books()] == ["Published"]

        books = BooksClient("http://testserver", session=client, token=author.token)
        titles = [b["title"] for b in books.fetch_books(role="author", user_id=author.id)]
        assert titles == ["Unpublished", "Published"]
