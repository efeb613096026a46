from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()

ROLES = ("customer", "author", "admin")
TICKET_STATUSES = ("pending", "resolved", "rejected")


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="customer")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Float, nullable=False, default=0)
    category = db.Column(db.String(120), nullable=True)
    tags = db.Column(db.Text, nullable=True)
    author_ref = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rating = db.Column(db.Float, nullable=False, default=0)
    total_reviews = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version = db.Column(db.Integer, nullable=False)

    reviews = db.relationship(
        "Review",
        back_populates="book",
        order_by="Review.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def recompute_rating(self):
        """Refresh the cached aggregate from the current review list."""
        self.total_reviews = len(self.reviews)
        if self.total_reviews:
            self.rating = sum(r.rating for r in self.reviews) / self.total_reviews
        else:
            self.rating = 0
        # Always touch the row so concurrent writers trip the version check.
        self.updated_at = utcnow()


class Review(db.Model):
    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    book = db.relationship("Book", back_populates="reviews")
    user = db.relationship("User")

    __table_args__ = (db.UniqueConstraint("book_id", "user_id", name="uq_review_book_user"),)

    def snapshot(self):
        return {"rating": self.rating, "comment": self.comment}


class ModerationLog(db.Model):
    __tablename__ = "moderation_logs"

    id = db.Column(db.Integer, primary_key=True)
    action_type = db.Column(db.String(20), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    review_id = db.Column(db.String(64), nullable=False)
    moderator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    old_value = db.Column(db.JSON, nullable=True)
    new_value = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    moderator = db.relationship("User", foreign_keys=[moderator_id])
    target_user = db.relationship("User", foreign_keys=[target_user_id])


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(40), nullable=False, default="info")
    read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    sender = db.relationship("User", foreign_keys=[sender_id])


class SupportTicket(db.Model):
    __tablename__ = "support_tickets"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(20), nullable=False, default="message", index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=False)
    book_id = db.Column(db.Integer, nullable=True)
    review_id = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    response = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ErrorLog(db.Model):
    __tablename__ = "error_logs"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(120), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="error")
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
