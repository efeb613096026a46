import os
import secrets
from functools import wraps

from flask import Flask, jsonify, request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

import moderation
from models import Book, ErrorLog, Notification, SupportTicket, TICKET_STATUSES, User, db
from moderation import ModerationError, NotFoundError, ValidationError
from notifier import Mailer


def create_app(config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///readverse.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["AUTH_TOKEN_TTL_SECONDS"] = int(os.getenv("AUTH_TOKEN_TTL_SECONDS", str(7 * 24 * 3600)))
    app.config["REVIEW_EDIT_WINDOW_DAYS"] = int(os.getenv("REVIEW_EDIT_WINDOW_DAYS", "7"))
    app.config["DELETE_REASON_MIN_LENGTH"] = int(os.getenv("DELETE_REASON_MIN_LENGTH", "5"))
    app.config["RESEND_API_KEY"] = os.getenv("RESEND_API_KEY", "")
    app.config["MAIL_SENDER"] = os.getenv("MAIL_SENDER", "Readverse <no-reply@readverse.app>")
    app.config["MAIL_ASYNC"] = os.getenv("MAIL_ASYNC", "true").lower() == "true"
    app.config["MAIL_WORKERS"] = int(os.getenv("MAIL_WORKERS", "2"))
    if config:
        app.config.update(config)

    db.init_app(app)
    Mailer(app)

    with app.app_context():
        db.create_all()

    token_serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="readverse-auth")

    def record_error(source, message, severity="error"):
        try:
            db.session.add(ErrorLog(source=source, severity=severity, message=message))
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception("Unable to record error log entry")

    @app.errorhandler(ModerationError)
    def handle_moderation_error(exc):
        db.session.rollback()
        if exc.status_code == 403:
            user = getattr(request, "current_user", None)
            app.logger.warning("Rejected %s %s for user %s: %s", request.method, request.path, user.id if user else None, exc.message)
        return jsonify({"message": exc.message}), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        if exc.code is None or exc.code < 400:
            return exc
        return jsonify({"message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        record_error("server", f"{request.method} {request.path}: {type(exc).__name__}: {exc}")
        return jsonify({"message": "Server error"}), 500

    def issue_token(user):
        return token_serializer.dumps({"id": user.id, "role": user.role})

    def get_user_from_token():
        scheme, _, raw = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not raw.strip():
            return None
        try:
            payload = token_serializer.loads(raw.strip(), max_age=app.config["AUTH_TOKEN_TTL_SECONDS"])
        except BadSignature:
            return None
        if not isinstance(payload, dict) or payload.get("id") is None:
            return None
        return db.session.get(User, payload["id"])

    def require_auth(role=None):
        allowed = (role,) if isinstance(role, str) else role

        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                if not request.headers.get("Authorization"):
                    return jsonify({"message": "Authentication required"}), 401
                user = get_user_from_token()
                if not user:
                    return jsonify({"message": "Invalid or expired token"}), 401
                if allowed and user.role not in allowed:
                    return jsonify({"message": "Forbidden"}), 403
                request.current_user = user
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def as_data():
        data = request.get_json(silent=True)
        if data is None:
            return request.form
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    def keyword_tokens(raw):
        if not raw:
            return []
        if isinstance(raw, (list, tuple)):
            return [str(k).strip() for k in raw if str(k).strip()]
        return [k.strip() for k in str(raw).split(",") if k.strip()]

    def user_to_dict(user):
        return {"id": user.id, "name": user.name, "email": user.email, "role": user.role}

    def user_ref(user):
        if not user:
            return None
        return {"id": user.id, "name": user.name}

    def book_to_dict(book):
        return {
            "id": book.id,
            "title": book.title,
            "author": book.author,
            "description": book.description,
            "price": book.price,
            "category": book.category,
            "tags": keyword_tokens(book.tags),
            "author_ref": book.author_ref,
            "rating": round(book.rating, 2),
            "total_reviews": book.total_reviews,
            "created_at": book.created_at.isoformat(),
            "updated_at": book.updated_at.isoformat(),
        }

    def reviews_to_list(reviews):
        return [
            {
                "id": r.id,
                "user": user_ref(r.user),
                "rating": r.rating,
                "comment": r.comment,
                "date": r.created_at.isoformat(),
            }
            for r in reviews
        ]

    def ticket_to_dict(ticket):
        return {
            "id": ticket.id,
            "kind": ticket.kind,
            "user_id": ticket.user_id,
            "email": ticket.email,
            "message": ticket.message,
            "book_id": ticket.book_id,
            "review_id": ticket.review_id,
            "status": ticket.status,
            "response": ticket.response,
            "created_at": ticket.created_at.isoformat(),
            "updated_at": ticket.updated_at.isoformat(),
        }

    @app.post("/auth/signup")
    def signup():
        data = as_data()
        name = (data.get("name") or "").strip() or None
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        role = (data.get("role") or "customer").strip().lower()
        if not email or not password:
            raise ValidationError("Email and password required")
        if role not in ("customer", "author"):
            raise ValidationError("role must be customer or author")
        if User.query.filter_by(email=email).first():
            return jsonify({"message": "Email already in use"}), 409
        user = User(name=name, email=email, password_hash=generate_password_hash(password), role=role)
        db.session.add(user)
        db.session.commit()
        return jsonify({"token": issue_token(user), "user": user_to_dict(user)}), 201

    @app.post("/auth/signin")
    def signin():
        data = as_data()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        user = User.query.filter_by(email=email).first()
        if not user or not check_password_hash(user.password_hash, password):
            return jsonify({"message": "Invalid credentials"}), 401
        return jsonify({"token": issue_token(user), "user": user_to_dict(user)})

    @app.get("/auth/me")
    @require_auth()
    def me():
        return jsonify(user_to_dict(request.current_user))

    @app.post("/books")
    @require_auth(role=("author", "admin"))
    def create_book():
        data = as_data()
        title = (data.get("title") or "").strip()
        author = (data.get("author") or request.current_user.name or "").strip()
        if not title or not author:
            raise ValidationError("title and author are required")
        try:
            price = float(data.get("price") or 0)
        except (TypeError, ValueError):
            raise ValidationError("price must be a number")

        book = Book(
            title=title,
            author=author,
            description=data.get("description"),
            price=price,
            category=(data.get("category") or "").strip() or None,
            tags=",".join(keyword_tokens(data.get("tags"))) or None,
            author_ref=request.current_user.id,
        )
        db.session.add(book)
        db.session.commit()
        app.logger.info("Book %s created by user %s", book.id, request.current_user.id)
        return jsonify(book_to_dict(book)), 201

    @app.get("/books/mine")
    @require_auth()
    def my_books():
        books = Book.query.filter_by(author_ref=request.current_user.id).order_by(Book.created_at.desc()).all()
        return jsonify([book_to_dict(b) for b in books])

    @app.get("/books/<int:book_id>")
    def get_book(book_id):
        return jsonify(book_to_dict(moderation.get_book(book_id)))

    @app.get("/books/<int:book_id>/reviews")
    def list_reviews(book_id):
        return jsonify(reviews_to_list(moderation.get_book(book_id).reviews))

    @app.post("/books/<int:book_id>/reviews")
    @require_auth()
    def create_review(book_id):
        data = as_data()
        reviews = moderation.create_review(book_id, request.current_user, data.get("rating"), data.get("comment"))
        return jsonify(reviews_to_list(reviews)), 201

    @app.put("/books/<int:book_id>/reviews/<int:review_id>")
    @require_auth()
    def edit_review(book_id, review_id):
        data = as_data()
        changes = {key: data.get(key) for key in ("rating", "comment") if key in data}
        reviews = moderation.edit_review(book_id, review_id, request.current_user, changes)
        return jsonify(reviews_to_list(reviews))

    @app.delete("/books/<int:book_id>/reviews/<int:review_id>")
    @require_auth()
    def delete_review(book_id, review_id):
        data = as_data()
        reviews = moderation.delete_review(book_id, review_id, request.current_user, data.get("reason"))
        return jsonify(reviews_to_list(reviews))

    @app.get("/books/<int:book_id>/moderation-log")
    @require_auth()
    def moderation_log(book_id):
        entries = moderation.moderation_log(book_id, request.current_user)
        return jsonify(
            [
                {
                    "id": e.id,
                    "action_type": e.action_type,
                    "book_id": e.book_id,
                    "review_id": e.review_id,
                    "moderator": user_ref(e.moderator),
                    "target_user": user_ref(e.target_user),
                    "reason": e.reason,
                    "old_value": e.old_value,
                    "new_value": e.new_value,
                    "timestamp": e.created_at.isoformat(),
                }
                for e in entries
            ]
        )

    @app.post("/support")
    def submit_support_message():
        data = as_data()
        message = (data.get("message") or "").strip()
        if not message:
            raise ValidationError("message is required")
        user = get_user_from_token()
        ticket = SupportTicket(
            kind="message",
            user_id=user.id if user else None,
            email=(data.get("email") or "").strip().lower() or (user.email if user else None),
            message=message,
        )
        db.session.add(ticket)
        db.session.commit()
        return jsonify({"message": "Support message received.", "id": ticket.id}), 201

    @app.post("/support/appeal")
    @require_auth()
    def file_appeal():
        data = as_data()
        appeal = moderation.file_appeal(
            request.current_user,
            data.get("reviewId"),
            data.get("bookId"),
            data.get("message"),
        )
        return jsonify(ticket_to_dict(appeal)), 201

    @app.get("/support/appeals")
    @require_auth(role="admin")
    def list_appeals():
        query = SupportTicket.query.filter_by(kind="appeal")
        status = (request.args.get("status") or "").strip().lower()
        if status:
            if status not in TICKET_STATUSES:
                raise ValidationError("Unknown appeal status")
            query = query.filter_by(status=status)
        rows = query.order_by(SupportTicket.created_at.desc(), SupportTicket.id.desc()).all()
        return jsonify([ticket_to_dict(t) for t in rows])

    @app.patch("/support/appeals/<int:appeal_id>")
    @require_auth(role="admin")
    def resolve_appeal(appeal_id):
        data = as_data()
        appeal = moderation.resolve_appeal(
            appeal_id,
            request.current_user,
            (data.get("status") or "").strip().lower(),
            data.get("response"),
        )
        return jsonify(ticket_to_dict(appeal))

    @app.get("/notifications")
    @require_auth()
    def list_notifications():
        rows = (
            Notification.query.filter_by(recipient_id=request.current_user.id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .all()
        )
        return jsonify(
            [
                {
                    "id": n.id,
                    "sender": {"id": n.sender.id, "name": n.sender.name, "role": n.sender.role} if n.sender else None,
                    "message": n.message,
                    "type": n.type,
                    "read": n.read,
                    "created_at": n.created_at.isoformat(),
                }
                for n in rows
            ]
        )

    @app.put("/notifications/<int:notification_id>/read")
    @require_auth()
    def mark_notification_read(notification_id):
        row = Notification.query.filter_by(id=notification_id, recipient_id=request.current_user.id).first()
        if not row:
            raise NotFoundError("Notification not found")
        row.read = True
        db.session.commit()
        return jsonify({"id": row.id, "read": row.read})

    @app.get("/admin/error-logs")
    @require_auth(role="admin")
    def list_error_logs():
        rows = ErrorLog.query.order_by(ErrorLog.created_at.desc(), ErrorLog.id.desc()).limit(500).all()
        return jsonify([
            {
                "id": r.id,
                "source": r.source,
                "severity": r.severity,
                "message": r.message,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ])

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)
