from types import SimpleNamespace

from eduplatform.comments import build_threads
from eduplatform.models import UserRole


def _comment(client, user, book_id, content, section="ch1", **extra):
    return client.post(
        f"/api/books/{book_id}/comments",
        json={"section_id": section, "content": content, **extra},
        headers=user.headers,
    )


class TestThreads:
    def _row(self, comment_id, parent_id):
        return SimpleNamespace(
            id=comment_id,
            parent_id=parent_id,
            book_id=1,
            user_id=1,
            section_id="s",
            content="c",
            comment_type="comment",
            status="open",
            created_at=None,
            updated_at=None,
        )

    def test_orphans_are_promoted(self):
        comments = [self._row(1, None), self._row(2, 1), self._row(3, 99), self._row(4, 2)]

        roots = build_threads(comments)
        assert [node["id"] for node in roots] == [1, 3]
        assert roots[0]["replies"][0]["id"] == 2
        assert roots[0]["replies"][0]["replies"][0]["id"] == 4


class TestCommentsApi:
    def test_moderator_review_thread(self, client, author, moderator, make_book):
        book = make_book(author)
        client.post(f"/api/books/{book['id']}/submit", headers=author.headers)

        response = _comment(client, moderator, book["id"], "Fix the diagram", comment_type="suggestion")
        assert response.status_code == 201
        parent = response.json()
        assert parent["status"] == "open"
        assert parent["comment_type"] == "suggestion"

        response = _comment(client, author, book["id"], "Done", parent_id=parent["id"])
        assert response.status_code == 201

        threads = client.get(f"/api/books/{book['id']}/comments", headers=author.headers).json()
        assert len(threads) == 1
        assert threads[0]["replies"][0]["content"] == "Done"

    def test_filter_by_section(self, client, author, make_book):
        book = make_book(author)
        _comment(client, author, book["id"], "one", section="ch1")
        _comment(client, author, book["id"], "two", section="ch2")

        response = client.get(f"/api/books/{book['id']}/comments", params={"section_id": "ch2"}, headers=author.headers)
        assert [c["content"] for c in response.json()] == ["two"]

    def test_cannot_comment_on_invisible_book(self, client, author, make_user, make_book):
        book = make_book(author)
        student = make_user(UserRole.STUDENT)
        assert _comment(client, student, book["id"], "hello").status_code == 404

    def test_reply_to_missing_parent(self, client, author, make_book):
        book = make_book(author)
        assert _comment(client, author, book["id"], "reply", parent_id=12345).status_code == 404

    def test_status_and_content_permissions(self, client, author, moderator, make_book):
        book = make_book(author)
        client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        comment = _comment(client, moderator, book["id"], "Typo on page 2").json()

        response = client.patch(f"/api/comments/{comment['id']}", json={"content": "edited"}, headers=author.headers)
        assert response.status_code == 403

        response = client.patch(f"/api/comments/{comment['id']}", json={"status": "resolved"}, headers=author.headers)
        assert response.status_code == 200
        assert response.json()["status"] == "resolved"

        response = client.patch(f"/api/comments/{comment['id']}", json={"content": "Typo on page 3"}, headers=moderator.headers)
        assert response.json()["content"] == "Typo on page 3"

    def test_delete_removes_replies(self, client, author, moderator, make_book):
        book = make_book(author)
        root = _comment(client, author, book["id"], "root").json()
        child = _comment(client, author, book["id"], "child", parent_id=root["id"]).json()
        _comment(client, author, book["id"], "grandchild", parent_id=child["id"])
        _comment(client, author, book["id"], "separate")

        assert client.delete(f"/api/comments/{root['id']}", headers=moderator.headers).status_code == 403
        assert client.delete(f"/api/comments/{root['id']}", headers=author.headers).status_code == 200

        remaining = client.get(f"/api/books/{book['id']}/comments", headers=author.headers).json()
        assert [c["content"] for c in remaining] == ["separate"]

    def test_deleting_commenter_keeps_other_replies(self, client, admin, author, moderator, make_book):
        book = make_book(author)
        client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        parent = _comment(client, moderator, book["id"], "Needs sources").json()
        _comment(client, author, book["id"], "Added", parent_id=parent["id"])
        _comment(client, moderator, book["id"], "Thanks", parent_id=parent["id"])

        response = client.delete(f"/api/users/{moderator.id}", params={"confirm": "true"}, headers=admin.headers)
        assert response.status_code == 200

        threads = client.get(f"/api/books/{book['id']}/comments", headers=author.headers).json()
        assert [(c["content"], c["parent_id"]) for c in threads] == [("Added", None)]
