import pytest

from eduplatform.models import BookStatus, UserRole
from eduplatform.workflow import (
    STATUS_ORDER,
    WorkflowError,
    WorkflowPermissionError,
    check_transition,
    next_status,
)


class TestTransitionRules:
    @pytest.mark.parametrize(
        "current, target, role",
        [
            (BookStatus.DRAFT, BookStatus.MODERATION, UserRole.AUTHOR),
            (BookStatus.MODERATION, BookStatus.APPROVED, UserRole.MODERATOR),
            (BookStatus.APPROVED, BookStatus.ACTIVE, UserRole.SUPER_ADMIN),
            (BookStatus.DRAFT, BookStatus.MODERATION, UserRole.SUPER_ADMIN),
            (BookStatus.MODERATION, BookStatus.APPROVED, UserRole.SUPER_ADMIN),
        ],
    )
    def test_allowed(self, current, target, role):
        check_transition(current, target, role)

    @pytest.mark.parametrize(
        "current, target",
        [
            (BookStatus.DRAFT, BookStatus.APPROVED),
            (BookStatus.DRAFT, BookStatus.ACTIVE),
            (BookStatus.MODERATION, BookStatus.ACTIVE),
            (BookStatus.ACTIVE, BookStatus.MODERATION),
            (BookStatus.APPROVED, BookStatus.MODERATION),
            (BookStatus.MODERATION, BookStatus.DRAFT),
        ],
    )
    def test_skips_and_backward_moves_rejected(self, current, target):
        with pytest.raises(WorkflowError):
            check_transition(current, target, UserRole.SUPER_ADMIN)

    @pytest.mark.parametrize(
        "current, target, role",
        [
            (BookStatus.DRAFT, BookStatus.MODERATION, UserRole.MODERATOR),
            (BookStatus.MODERATION, BookStatus.APPROVED, UserRole.AUTHOR),
            (BookStatus.APPROVED, BookStatus.ACTIVE, UserRole.MODERATOR),
            (BookStatus.APPROVED, BookStatus.ACTIVE, UserRole.SCHOOL),
        ],
    )
    def test_wrong_role_rejected(self, current, target, role):
        with pytest.raises(WorkflowPermissionError):
            check_transition(current, target, role)

    def test_next_status(self):
        assert [next_status(status) for status in STATUS_ORDER] == [
            BookStatus.MODERATION,
            BookStatus.APPROVED,
            BookStatus.ACTIVE,
            None,
        ]


class TestWorkflowApi:
    def test_full_pipeline(self, client, author, moderator, admin, make_book):
        book = make_book(author)
        assert book["status"] == "Draft"

        response = client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        assert response.status_code == 200
        assert response.json()["status"] == "Moderation"

        response = client.post(f"/api/books/{book['id']}/approve", headers=moderator.headers)
        assert response.status_code == 200
        assert response.json()["status"] == "Approved"
        assert response.json()["moderator_id"] == moderator.id

        response = client.post(f"/api/books/{book['id']}/activate", headers=admin.headers)
        assert response.status_code == 200
        assert response.json()["status"] == "Active"

    def test_cannot_skip_moderation(self, client, author, moderator, make_book):
        book = make_book(author)
        response = client.post(f"/api/books/{book['id']}/approve", headers=moderator.headers)
        assert response.status_code == 409
        assert client.get(f"/api/books/{book['id']}", headers=author.headers).json()["status"] == "Draft"

    def test_moderator_cannot_activate(self, client, author, moderator, make_book):
        book = make_book(author)
        client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        client.post(f"/api/books/{book['id']}/approve", headers=moderator.headers)

        response = client.post(f"/api/books/{book['id']}/activate", headers=moderator.headers)
        assert response.status_code == 403

    def test_author_cannot_submit_someone_elses_book(self, client, author, make_user, make_book):
        book = make_book(author)
        other = make_user(UserRole.AUTHOR)
        response = client.post(f"/api/books/{book['id']}/submit", headers=other.headers)
        # Drafts are invisible to other authors.
        assert response.status_code == 404

    def test_resubmitting_is_a_conflict(self, client, author, make_book):
        book = make_book(author)
        client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        response = client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        assert response.status_code == 409

    def test_author_loses_edit_rights_after_submit(self, client, author, make_book):
        book = make_book(author)
        client.post(f"/api/books/{book['id']}/submit", headers=author.headers)
        response = client.patch(f"/api/books/{book['id']}", json={"title": "Changed"}, headers=author.headers)
        assert response.status_code == 403
