from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from models import Book, Review, User, db, utcnow


PASSWORD = "correct horse battery"


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SECRET_KEY": "test-secret",
            "MAIL_ASYNC": False,
            "RESEND_API_KEY": "",
        }
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app, client):
    """Create a user directly in the database and return (id, auth headers)."""

    def _make_user(email, role="customer", name=None):
        with app.app_context():
            user = User(
                name=name or email.split("@")[0].title(),
                email=email,
                password_hash=generate_password_hash(PASSWORD),
                role=role,
            )
            db.session.add(user)
            db.session.commit()
            user_id = user.id
        resp = client.post("/auth/signin", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200
        return user_id, {"Authorization": f"Bearer {resp.get_json()['token']}"}

    return _make_user


@pytest.fixture
def actors(make_user):
    return {
        "author": make_user("author@example.com", role="author", name="Ada Author"),
        "other_author": make_user("other@example.com", role="author", name="Otto Other"),
        "admin": make_user("admin@example.com", role="admin", name="Alex Admin"),
        "reader": make_user("reader@example.com", name="Rita Reader"),
        "reader2": make_user("reader2@example.com", name="Rob Reader"),
    }


@pytest.fixture
def book_id(client, actors):
    _, headers = actors["author"]
    resp = client.post(
        "/books",
        json={"title": "The Long Shelf", "author": "Ada Author", "price": 9.5, "tags": "fiction, shelves"},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.get_json()["id"]


@pytest.fixture
def age_review(app):
    def _age_review(review_id, delta):
        with app.app_context():
            review = db.session.get(Review, review_id)
            review.created_at = utcnow() - delta
            db.session.commit()

    return _age_review


@pytest.fixture
def load_book(app):
    def _load_book(book_id):
        with app.app_context():
            book = db.session.get(Book, book_id)
            return {
                "rating": book.rating,
                "total_reviews": book.total_reviews,
                "ratings": [r.rating for r in book.reviews],
            }

    return _load_book
