"""
Tests for posting and listing book reviews.
"""

import pytest


def post_review(client, book_id, headers, rating, comment=None):
    body = {"rating": rating}
    if comment is not None:
        body["comment"] = comment
    return client.post(f"/books/{book_id}/reviews", json=body, headers=headers)


def test_create_review_returns_review_list(client, actors, book_id):
    """Posting a review returns the book's full review list."""
    _, headers = actors["reader"]
    resp = post_review(client, book_id, headers, 4, "ok")

    assert resp.status_code == 201
    reviews = resp.get_json()
    assert len(reviews) == 1
    assert reviews[0]["rating"] == 4
    assert reviews[0]["comment"] == "ok"
    assert reviews[0]["user"]["name"] == "Rita Reader"


def test_rating_and_count_follow_reviews(client, actors, book_id, load_book):
    """Book rating is the mean of review ratings after every create."""
    post_review(client, book_id, actors["reader"][1], 5)
    post_review(client, book_id, actors["reader2"][1], 2)
    post_review(client, book_id, actors["other_author"][1], 4)

    book = load_book(book_id)
    assert book["total_reviews"] == 3
    assert book["rating"] == pytest.approx(11 / 3)

    resp = client.get(f"/books/{book_id}")
    assert resp.get_json()["total_reviews"] == 3
    assert resp.get_json()["rating"] == round(11 / 3, 2)


def test_duplicate_review_rejected(client, actors, book_id, load_book):
    """A user gets one review per book no matter how many others exist."""
    post_review(client, book_id, actors["reader2"][1], 3)
    post_review(client, book_id, actors["reader"][1], 4)

    resp = post_review(client, book_id, actors["reader"][1], 1)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "You have already reviewed this book"
    assert load_book(book_id)["ratings"] == [3, 4]


@pytest.mark.parametrize("rating", [None, "", 0, 6, "abc", 4.5, True])
def test_invalid_rating_rejected(client, actors, book_id, load_book, rating):
    """Ratings must be present and an integer from 1 to 5."""
    resp = post_review(client, book_id, actors["reader"][1], rating)

    assert resp.status_code == 400
    assert "message" in resp.get_json()
    assert load_book(book_id)["total_reviews"] == 0


def test_review_on_missing_book(client, actors):
    resp = post_review(client, 9999, actors["reader"][1], 4)
    assert resp.status_code == 404
    assert resp.get_json() == {"message": "Book not found"}


def test_non_text_comment_rejected(client, actors, book_id, load_book):
    resp = post_review(client, book_id, actors["reader"][1], 4, comment=42)

    assert resp.status_code == 400
    assert resp.get_json() == {"message": "Comment must be text"}
    assert load_book(book_id)["total_reviews"] == 0


def test_create_review_requires_auth(client, book_id):
    resp = client.post(f"/books/{book_id}/reviews", json={"rating": 4})
    assert resp.status_code == 401


def test_list_reviews_is_public_and_ordered(client, actors, book_id):
    """Reviews come back in the order they were written."""
    post_review(client, book_id, actors["reader"][1], 5, "first")
    post_review(client, book_id, actors["reader2"][1], 1, "second")

    resp = client.get(f"/books/{book_id}/reviews")
    assert resp.status_code == 200
    comments = [r["comment"] for r in resp.get_json()]
    assert comments == ["first", "second"]
    assert resp.get_json()[1]["user"] == {"id": actors["reader2"][0], "name": "Rob Reader"}


def test_list_reviews_missing_book(client):
    assert client.get("/books/4242/reviews").status_code == 404
