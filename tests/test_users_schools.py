import jwt
import pytest

from eduplatform.models import UserRole
from eduplatform.security import (
    AuthError,
    create_access_token,
    decode_access_token,
    hash_password,
    password_problem,
    verify_password,
)


class TestAuth:
    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"

    def test_super_admin_is_seeded(self, client, admin):
        me = client.get("/api/me", headers=admin.headers).json()
        assert me["role"] == "super_admin"
        assert me["email"] == "root@example.com"

    def test_bad_credentials(self, client):
        response = client.post("/api/auth/login", json={"email": "root@example.com", "password": "wrong-password"})
        assert response.status_code == 401

    def test_token_required(self, client):
        assert client.get("/api/me").status_code == 401
        assert client.get("/api/me", headers={"Authorization": "Token abc"}).status_code == 401
        assert client.get("/api/me", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


class TestUsers:
    def test_school_sees_only_its_people(self, client, admin, make_user, school_id):
        other_school = client.post("/api/schools", json={"name": "Other"}, headers=admin.headers).json()["id"]
        school = make_user(UserRole.SCHOOL, school_id=school_id)
        teacher = make_user(UserRole.TEACHER, school_id=school_id)
        make_user(UserRole.TEACHER, school_id=other_school)

        response = client.get("/api/users", params={"role": "teacher"}, headers=school.headers)
        assert [u["id"] for u in response.json()] == [teacher.id]

    def test_teacher_sees_own_students(self, client, make_user, school_id):
        teacher = make_user(UserRole.TEACHER, school_id=school_id)
        mine = make_user(UserRole.STUDENT, school_id=school_id, teacher_id=teacher.id)
        make_user(UserRole.STUDENT, school_id=school_id)

        response = client.get("/api/users", headers=teacher.headers)
        assert [u["id"] for u in response.json()] == [mine.id]

    def test_admin_search(self, client, admin, make_user):
        author = make_user(UserRole.AUTHOR)
        make_user(UserRole.MODERATOR)
        response = client.get("/api/users", params={"search": author.email.upper()}, headers=admin.headers)
        assert [u["email"] for u in response.json()] == [author.email]

    def test_students_cannot_list_users(self, client, make_user):
        student = make_user(UserRole.STUDENT)
        assert client.get("/api/users", headers=student.headers).status_code == 403

    def test_deactivated_user_cannot_log_in(self, client, admin, author):
        response = client.patch(f"/api/users/{author.id}/active", json={"is_active": False}, headers=admin.headers)
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        assert client.get("/api/me", headers=author.headers).status_code == 401
        login = client.post("/api/auth/login", json={"email": author.email, "password": "Password@123"})
        assert login.status_code == 401

    def test_admin_cannot_deactivate_self(self, client, admin):
        response = client.patch(f"/api/users/{admin.id}/active", json={"is_active": False}, headers=admin.headers)
        assert response.status_code == 400

    def test_delete_user(self, client, admin, make_user, make_book):
        reader = make_user(UserRole.STUDENT)
        assert client.delete(f"/api/users/{reader.id}", headers=admin.headers).status_code == 400
        assert client.delete(f"/api/users/{reader.id}", params={"confirm": "true"}, headers=admin.headers).status_code == 200

        writer = make_user(UserRole.AUTHOR)
        make_book(writer)
        response = client.delete(f"/api/users/{writer.id}", params={"confirm": "true"}, headers=admin.headers)
        assert response.status_code == 409


class TestSchools:
    def test_list_with_counts(self, client, admin, make_user, school_id):
        make_user(UserRole.TEACHER, school_id=school_id)
        make_user(UserRole.STUDENT, school_id=school_id)
        make_user(UserRole.STUDENT, school_id=school_id)

        schools = client.get("/api/schools", headers=admin.headers).json()
        assert schools[0]["teachers_count"] == 1
        assert schools[0]["students_count"] == 2
        assert schools[0]["books_count"] == 0

    def test_detail_for_own_school(self, client, admin, make_user, school_id):
        school = make_user(UserRole.SCHOOL, school_id=school_id)
        teacher = make_user(UserRole.TEACHER, school_id=school_id)

        detail = client.get(f"/api/schools/{school_id}", headers=school.headers).json()
        assert [t["id"] for t in detail["teachers"]] == [teacher.id]
        assert detail["students"] == []

        other = client.post("/api/schools", json={"name": "Other"}, headers=admin.headers).json()["id"]
        assert client.get(f"/api/schools/{other}", headers=school.headers).status_code == 403

    def test_invalid_contact_email(self, client, admin):
        response = client.post("/api/schools", json={"name": "Bad", "contact_email": "nope"}, headers=admin.headers)
        assert response.status_code == 400

    def test_delete_school(self, client, admin, make_user, school_id):
        make_user(UserRole.TEACHER, school_id=school_id)
        response = client.delete(f"/api/schools/{school_id}", params={"confirm": "true"}, headers=admin.headers)
        assert response.status_code == 409

        empty = client.post("/api/schools", json={"name": "Empty"}, headers=admin.headers).json()["id"]
        assert client.delete(f"/api/schools/{empty}", headers=admin.headers).status_code == 400
        assert client.delete(f"/api/schools/{empty}", params={"confirm": "true"}, headers=admin.headers).status_code == 200
        assert client.get(f"/api/schools/{empty}", headers=admin.headers).status_code == 404


class TestTokens:
    def test_round_trip(self):
        claims = decode_access_token(create_access_token(42, "author"))
        assert claims["sub"] == "42"
        assert claims["role"] == "author"

    def test_expired_token(self):
        token = create_access_token(1, "author", expires_minutes=-1)
        with pytest.raises(AuthError, match="expired"):
            decode_access_token(token)

    def test_foreign_token(self):
        token = jwt.encode({"sub": "1", "role": "author", "exp": 4102444800}, "another-secret-key-of-decent-length", algorithm="HS256")
        with pytest.raises(AuthError):
            decode_access_token(token)

    @pytest.mark.parametrize(
        "password, ok",
        [("Password1", True), ("пароль2024", True), ("short1", False), ("onlyletters", False), ("1234567890", False)],
    )
    def test_password_rules(self, password, ok):
        assert (password_problem(password) is None) is ok

    def test_password_hashing(self):
        hashed = hash_password("Password@123")
        assert verify_password("Password@123", hashed)
        assert not verify_password("Password@124", hashed)
        assert not verify_password("Password@123", "not-a-bcrypt-hash")

    def test_weak_password_rejected_at_registration(self, client, admin):
        key = client.post("/api/keys", json={"role": "author"}, headers=admin.headers).json()
        response = client.post(
            "/api/auth/register",
            json={"key": key["key"], "email": "weak@example.com", "password": "onlyletters", "display_name": "Weak"},
        )
        assert response.status_code == 400
        assert "digits" in response.json()["detail"]
