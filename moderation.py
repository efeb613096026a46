"""Review moderation workflow.

Book authors and admins can edit or delete reviews left on a book. Every
such action is written to the moderation log and the reviewer is notified
in-app and, when possible, by email. Reviewers can appeal an action through
a support ticket.

All functions work on ``db.session`` and expect an application context.
Errors are raised as ``ModerationError`` subclasses carrying the HTTP status
the API returns for them.
"""

from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from models import Book, ModerationLog, Review, SupportTicket, as_utc, db, utcnow
from notifier import notify, send_email


class ModerationError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(ModerationError):
    status_code = 400


class DuplicateReviewError(ModerationError):
    status_code = 400


class ForbiddenError(ModerationError):
    status_code = 403


class NotFoundError(ModerationError):
    status_code = 404


class ConflictError(ModerationError):
    status_code = 409


def is_admin(actor):
    return actor is not None and actor.role == "admin"


def is_book_author(actor, book):
    return actor is not None and book.author_ref == actor.id


def can_moderate(actor, book):
    return is_admin(actor) or is_book_author(actor, book)


def can_view_moderation_log(actor, book):
    return is_book_author(actor, book)


def parse_rating(value):
    if value is None or value == "":
        raise ValidationError("Rating required")
    if isinstance(value, bool):
        raise ValidationError("Rating must be an integer from 1 to 5.")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError("Rating must be an integer from 1 to 5.")
    try:
        rating = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Rating must be an integer from 1 to 5.")
    if rating < 1 or rating > 5:
        raise ValidationError("Rating must be between 1 and 5.")
    return rating


def clean_text(value):
    if value is None:
        return None
    return str(value).strip() or None


def clean_comment(value):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Comment must be text")
    return value.strip()


def get_book(book_id):
    book = db.session.get(Book, book_id)
    if not book:
        raise NotFoundError("Book not found")
    return book


def find_review(book, review_id):
    for review in book.reviews:
        if str(review.id) == str(review_id):
            return review
    raise NotFoundError("Review not found")


def check_edit_window(review, actor):
    if is_admin(actor):
        return
    window = timedelta(days=current_app.config["REVIEW_EDIT_WINDOW_DAYS"])
    if utcnow() - as_utc(review.created_at) > window:
        raise ForbiddenError("Review edit window expired")


def moderator_label(actor):
    name = actor.name or actor.email
    return f"{name} (admin)" if is_admin(actor) else f"{name} (author)"


def commit():
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError("Book was modified by another request, please retry")


def create_review(book_id, actor, rating, comment=None):
    rating = parse_rating(rating)
    comment = clean_comment(comment)
    book = get_book(book_id)
    if any(r.user_id == actor.id for r in book.reviews):
        raise DuplicateReviewError("You have already reviewed this book")

    book.reviews.append(Review(user_id=actor.id, rating=rating, comment=comment))
    book.recompute_rating()
    try:
        commit()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateReviewError("You have already reviewed this book")

    current_app.logger.info("User %s reviewed book %s with rating %s", actor.id, book.id, rating)
    return book.reviews


def edit_review(book_id, review_id, actor, changes):
    """Apply a moderator's edit to a review.

    Only keys present in ``changes`` (``rating``, ``comment``) are
    overwritten. The log entry and notification are committed together
    with the review change; email goes out afterwards and never fails the
    call.
    """
    book = get_book(book_id)
    if not can_moderate(actor, book):
        raise ForbiddenError("Only the book's author or an admin can edit reviews")
    review = find_review(book, review_id)
    check_edit_window(review, actor)
    if "rating" not in changes and "comment" not in changes:
        raise ValidationError("Nothing to update")

    if "rating" in changes:
        new_rating = parse_rating(changes["rating"])
    if "comment" in changes:
        new_comment = clean_comment(changes["comment"])

    old_value = review.snapshot()
    if "rating" in changes:
        review.rating = new_rating
    if "comment" in changes:
        review.comment = new_comment
    book.recompute_rating()

    target = review.user
    db.session.add(
        ModerationLog(
            action_type="edit",
            book_id=book.id,
            review_id=str(review.id),
            moderator_id=actor.id,
            target_user_id=review.user_id,
            old_value=old_value,
            new_value=review.snapshot(),
        )
    )
    message = f'Your review on "{book.title}" was edited by {moderator_label(actor)}.'
    notify(review.user_id, actor, message, type="review_edited")
    commit()

    current_app.logger.info("Review %s on book %s edited by user %s", review.id, book.id, actor.id)
    send_email(target, "Your review was edited", message)
    return book.reviews


def delete_review(book_id, review_id, actor, reason):
    reason = reason.strip() if isinstance(reason, str) else ""
    if len(reason) < current_app.config["DELETE_REASON_MIN_LENGTH"]:
        raise ValidationError(
            f"A reason of at least {current_app.config['DELETE_REASON_MIN_LENGTH']} characters is required"
        )

    book = get_book(book_id)
    if not can_moderate(actor, book):
        raise ForbiddenError("Only the book's author or an admin can delete reviews")
    review = find_review(book, review_id)
    check_edit_window(review, actor)

    # Captured before removal; the review id is unrecoverable afterwards.
    target = review.user
    review_ref = str(review.id)
    db.session.add(
        ModerationLog(
            action_type="delete",
            book_id=book.id,
            review_id=review_ref,
            moderator_id=actor.id,
            target_user_id=review.user_id,
            reason=reason,
            old_value=review.snapshot(),
        )
    )
    message = f'Your review on "{book.title}" was deleted by {moderator_label(actor)}. Reason: {reason}'
    notify(review.user_id, actor, message, type="review_deleted")

    book.reviews.remove(review)
    book.recompute_rating()
    commit()

    current_app.logger.info("Review %s on book %s deleted by user %s", review_ref, book.id, actor.id)
    send_email(target, "Your review was removed", message)
    return book.reviews


def moderation_log(book_id, actor):
    book = get_book(book_id)
    if not can_view_moderation_log(actor, book):
        raise ForbiddenError("Only the book's author can view its moderation log")
    return (
        ModerationLog.query.filter_by(book_id=book.id)
        .order_by(ModerationLog.created_at.desc(), ModerationLog.id.desc())
        .all()
    )


def file_appeal(actor, review_id, book_id, message):
    message = clean_text(message)
    if not review_id or not book_id or not message:
        raise ValidationError("reviewId, bookId and message are required")
    try:
        book_id = int(book_id)
    except (TypeError, ValueError):
        raise ValidationError("bookId must be a valid book id")

    appeal = SupportTicket(
        kind="appeal",
        user_id=actor.id,
        email=actor.email,
        message=message,
        book_id=book_id,
        review_id=str(review_id),
        status="pending",
    )
    db.session.add(appeal)
    db.session.commit()
    current_app.logger.info("User %s appealed moderation of review %s on book %s", actor.id, review_id, book_id)
    return appeal


def resolve_appeal(appeal_id, actor, status, response=None):
    appeal = SupportTicket.query.filter_by(id=appeal_id, kind="appeal").first()
    if not appeal:
        raise NotFoundError("Appeal not found")
    if status not in ("resolved", "rejected"):
        raise ValidationError("status must be resolved or rejected")
    if appeal.status != "pending":
        raise ConflictError(f"Appeal is already {appeal.status}")

    appeal.status = status
    appeal.response = clean_text(response)
    message = f"Your appeal for review {appeal.review_id} was {status}."
    if appeal.response:
        message = f"{message} Response: {appeal.response}"
    if appeal.user_id:
        notify(appeal.user_id, actor, message, type="appeal_update")
    db.session.commit()

    current_app.logger.info("Appeal %s %s by user %s", appeal.id, status, actor.id)
    if appeal.email:
        current_app.extensions["mailer"].send(appeal.email, "Update on your appeal", message)
    return appeal
