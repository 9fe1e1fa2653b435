import hmac
import os
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import bcrypt
import resend
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import mpesa
from order_events import OrderEventPublisher
from order_store import OrderRepository, order_reference, serialize_rider
from orders import (
    OrderAuthenticationError,
    OrderConflictError,
    OrderError,
    OrderForbiddenError,
    OrderLockedError,
    OrderValidationError,
    add_item,
    apply_payment_result,
    assign_rider,
    authorize_status_change,
    build_order_document,
    can_view_order,
    change_status,
    is_assigned_rider,
    is_locked,
    normalize_requested_items,
    parse_quantity,
    remove_item,
    resolve_actor_relation,
    review_fulfillment,
    round_money,
    update_item_quantity,
    user_role,
    validate_status,
)

load_dotenv()

_configured_admin_email = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@example.com") or "admin@example.com"
DEFAULT_ADMIN_EMAIL = _configured_admin_email.strip().lower()

ALLOWED_USER_ROLES = {"admin", "rider", "customer"}
PAYMENT_CALLBACK_ATTEMPTS = 3


def create_app(test_config: Optional[Dict] = None, db=None) -> Flask:
    """Create and configure the Flask application.

    ``db`` lets callers hand in an existing database handle; otherwise one is
    opened from ``MONGO_URI`` through Flask-PyMongo.
    """
    app = Flask(__name__)

    # Honor proxy headers so callback URLs keep the public HTTPS origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=7)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/orderdesk"
    )
    app.config["RESEND_NEW_ORDER_PLACED"] = (os.getenv("RESEND_NEW_ORDER_PLACED") or "").strip()
    app.config["ORDER_EMAIL_SENDER"] = (
        os.getenv("ORDER_EMAIL_SENDER", "orders@example.com") or "orders@example.com"
    ).strip()
    for key in (
        "MPESA_CONSUMER_KEY",
        "MPESA_CONSUMER_SECRET",
        "MPESA_SHORTCODE",
        "MPESA_PASSKEY",
        "MPESA_BASE_URL",
        "MPESA_CALLBACK_URL",
        "MPESA_CALLBACK_TOKEN",
    ):
        app.config[key] = (os.getenv(key) or "").strip()

    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    repository = OrderRepository(db)
    events = OrderEventPublisher(db, app.logger)
    audit_logs_collection = db.audit_logs

    try:
        repository.ensure_indexes()
        events.ensure_indexes()
        audit_logs_collection.create_index([("created_at", -1)])
    except Exception as exc:
        app.logger.warning("Unable to ensure order indexes: %s", exc)

    app.extensions["order_repository"] = repository
    app.extensions["order_events"] = events

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "customer"

    def load_current_user() -> Dict:
        current_email = normalize_email(get_jwt_identity())
        user_document = db.users.find_one({"email": current_email}) if current_email else None
        if not user_document:
            raise OrderAuthenticationError("User not found")
        if current_email == DEFAULT_ADMIN_EMAIL:
            user_document["role"] = "admin"
        return user_document

    def require_admin_user() -> Dict:
        user_document = load_current_user()
        if user_role(user_document) != "admin":
            raise OrderForbiddenError("Forbidden - admin only")
        return user_document

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(actor: Optional[Dict], action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            log_document = {
                "user_email": normalize_email(actor.get("email")) if actor else None,
                "user_name": (actor.get("name", "") or "") if actor else "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": datetime.utcnow(),
            }
            if actor:
                log_document["metadata"].setdefault("user_role", user_role(actor))
            audit_logs_collection.insert_one(log_document)
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def send_order_confirmation_email(order: Dict, recipient: Dict) -> Tuple[bool, Optional[str]]:
        recipient_email = normalize_email(recipient.get("email"))
        if not recipient_email:
            return False, "Missing customer email for the order receipt."

        reference = order_reference(order["_id"])
        total_value = round_money(order.get("total"))
        item_count = sum(int(item.get("quantity") or 0) for item in order.get("items") or [])
        greeting = recipient.get("name") or "there"
        html_body = (
            f"<p>Hi {greeting},</p>"
            f"<p>We received your order <strong>{reference}</strong> "
            f"({item_count} item(s), total {total_value:.2f}).</p>"
            "<p>We will let you know as soon as a rider is on the way.</p>"
        )
        text_body = (
            f"Hi {greeting}, we received your order {reference} "
            f"({item_count} item(s), total {total_value:.2f})."
        )
        payload: Dict[str, object] = {
            "from": app.config["ORDER_EMAIL_SENDER"],
            "to": [recipient_email],
            "subject": "Thank you for your order",
            "html": html_body,
            "text": text_body,
        }
        return send_email_via_resend(payload, app.config["RESEND_NEW_ORDER_PLACED"])

    def commit(order: Dict, reason: str, notify_subscribers: bool = False) -> Dict:
        repository.save(order)
        events.order_changed(order, reason, notify_subscribers=notify_subscribers)
        return order

    def order_response(order: Dict, message: Optional[str] = None, status_code: int = 200):
        body = {"success": True, "order": repository.populate_one(order)}
        if message:
            body["message"] = message
        return jsonify(body), status_code

    def parse_coordinate(value) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise OrderValidationError("Coordinates invalid")
        return float(value)

    # --- Error handlers ---

    @app.errorhandler(OrderError)
    def handle_order_error(exc: OrderError):
        return jsonify({"message": exc.message}), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": "Internal server error"}), 500

    # --- Accounts ---

    @app.route("/api/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))
        phone = str(payload.get("phone", "")).strip()

        if not email or not name or not password:
            return (
                jsonify(
                    {
                        "message": "Email, name, and password are required to create an account."
                    }
                ),
                400,
            )

        if db.users.find_one({"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 400

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        user_document = {
            "email": email,
            "name": name,
            "password": hashed_pw,
            "phone": phone,
            "role": "admin" if email == DEFAULT_ADMIN_EMAIL else "customer",
            "assigned_orders": [],
            "created_at": datetime.utcnow(),
        }
        insert_result = db.users.insert_one(user_document)

        record_audit_log(user_document, "Registered new account", {"user_id": str(insert_result.inserted_id)})

        return (
            jsonify(
                {
                    "message": "Account created.",
                    "access_token": create_access_token(identity=email),
                    "user": {
                        "id": str(insert_result.inserted_id),
                        "email": email,
                        "name": name,
                        "role": user_document["role"],
                    },
                }
            ),
            201,
        )

    @app.route("/api/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid credentials"}), 401

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )

        return jsonify(
            {
                "access_token": create_access_token(identity=email),
                "user": {
                    "id": str(user["_id"]),
                    "email": email,
                    "name": user.get("name", "") or "",
                    "role": "admin" if email == DEFAULT_ADMIN_EMAIL else user_role(user),
                },
            }
        )

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def update_user_role(user_id: str):
        admin_user = require_admin_user()

        payload = request.get_json(silent=True) or {}
        desired_role = str(payload.get("role", "")).strip().lower()
        if desired_role not in ALLOWED_USER_ROLES:
            return (
                jsonify({"message": "Role must be 'admin', 'rider', or 'customer'."}),
                400,
            )

        user_to_update = repository.get_user(user_id)
        if not user_to_update:
            return jsonify({"message": "User not found."}), 404

        target_email = normalize_email(user_to_update.get("email"))
        if target_email == DEFAULT_ADMIN_EMAIL and desired_role != "admin":
            return (
                jsonify({"message": "The default administrator must remain an admin."}),
                400,
            )

        db.users.update_one({"_id": user_to_update["_id"]}, {"$set": {"role": normalize_role(desired_role)}})
        record_audit_log(
            admin_user,
            "Updated user role",
            {"target_email": target_email, "new_role": desired_role},
        )
        return jsonify({"message": f"Role updated to {desired_role}.", "role": desired_role})

    # --- Orders ---

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user = load_current_user()
        payload = request.get_json(silent=True) or {}

        requested_items = normalize_requested_items(payload.get("items"))
        products = repository.find_products(entry["product"] for entry in requested_items)
        order = build_order_document(
            current_user["_id"],
            requested_items,
            products,
            payload.get("shippingAddress") or payload.get("shipping_address"),
        )
        repository.insert(order)
        events.order_changed(order, "created")

        app.logger.info(
            "Order %s created by %s with total %.2f",
            order["_id"],
            current_user.get("email"),
            order["original_total"],
        )

        email_sent, email_error = send_order_confirmation_email(order, current_user)
        if not email_sent:
            app.logger.warning("Order confirmation for %s not sent: %s", order["_id"], email_error)

        return order_response(order, status_code=201)

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        current_user = load_current_user()
        orders = repository.list_for(current_user)
        return jsonify({"orders": repository.populate(orders)})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user = load_current_user()
        order = repository.get(order_id)
        if not can_view_order(current_user, order):
            raise OrderForbiddenError("Forbidden")
        return jsonify({"order": repository.populate_one(order)})

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order(order_id: str):
        current_user = load_current_user()
        order = repository.get(order_id)
        payload = request.get_json(silent=True) or {}
        target_status = validate_status(payload.get("status"))

        relation = resolve_actor_relation(current_user, order)
        authorize_status_change(relation, target_status)

        assigned_rider = None
        previous_rider = order.get("rider")
        if relation == "admin" and "rider" in payload:
            assigned_rider = repository.get_user(payload.get("rider"))
            assign_rider(order, assigned_rider)

        previous_status = order.get("status")
        status_changed = change_status(order, target_status) if target_status else False
        rider_changed = order.get("rider") != previous_rider
        if not status_changed and not rider_changed:
            return order_response(order)

        commit(order, "status", notify_subscribers=True)
        if assigned_rider:
            repository.add_assigned_order(assigned_rider["_id"], order["_id"])

        if order.get("status") != previous_status:
            app.logger.info(
                "Order %s moved from %s to %s by %s (%s)",
                order["_id"],
                previous_status,
                order["status"],
                current_user.get("email"),
                relation,
            )
        if relation == "admin":
            record_audit_log(
                current_user,
                "Updated order",
                {
                    "order_id": str(order["_id"]),
                    "status": order.get("status"),
                    "rider": str(assigned_rider["_id"]) if assigned_rider else None,
                },
            )
        return order_response(order)

    @app.route("/api/orders/<order_id>/assign-rider", methods=["POST"])
    @jwt_required()
    def assign_rider_to_order(order_id: str):
        admin_user = require_admin_user()
        payload = request.get_json(silent=True) or {}
        rider_identifier = payload.get("riderId") or payload.get("rider_id")
        if not rider_identifier:
            raise OrderValidationError("riderId is required")

        order = repository.get(order_id)
        rider = repository.get_user(rider_identifier)
        assign_rider(order, rider, force_shipped=True)

        commit(order, "rider_assigned", notify_subscribers=True)
        repository.add_assigned_order(rider["_id"], order["_id"])

        app.logger.info("Rider %s assigned to order %s", rider["_id"], order["_id"])
        record_audit_log(
            admin_user,
            "Assigned rider",
            {"order_id": str(order["_id"]), "rider": str(rider["_id"])},
        )
        return order_response(order, message="Rider assigned successfully")

    def force_status(order_id: str, target: str, reason: str):
        current_user = load_current_user()
        order = repository.get(order_id)
        if user_role(current_user) != "admin" and not is_assigned_rider(current_user, order):
            raise OrderForbiddenError("Forbidden")

        change_status(order, target)
        commit(order, reason, notify_subscribers=True)
        app.logger.info("Order %s marked %s by %s", order["_id"], target, current_user.get("email"))
        return order_response(order)

    @app.route("/api/orders/<order_id>/complete", methods=["PUT"])
    @jwt_required()
    def complete_order(order_id: str):
        return force_status(order_id, "completed", "completed")

    # --- Fulfillment adjustments ---

    @app.route("/api/orders/<order_id>/items", methods=["POST"])
    @jwt_required()
    def add_order_item(order_id: str):
        admin_user = require_admin_user()
        payload = request.get_json(silent=True) or {}
        product_identifier = payload.get("productId") or payload.get("product_id") or payload.get("product")
        if not product_identifier:
            raise OrderValidationError("productId is required")
        quantity = parse_quantity(payload.get("quantity"), 1)

        order = repository.get(order_id)
        if is_locked(order):
            raise OrderLockedError()
        product = repository.get_product(product_identifier)
        add_item(order, product, quantity, admin_user["_id"])

        commit(order, "item_added")
        record_audit_log(
            admin_user,
            "Added order item",
            {"order_id": str(order["_id"]), "product": str(product["_id"]), "quantity": quantity},
        )
        return order_response(order)

    @app.route("/api/orders/<order_id>/items/<item_id>", methods=["PUT"])
    @jwt_required()
    def update_order_item(order_id: str, item_id: str):
        admin_user = require_admin_user()
        payload = request.get_json(silent=True) or {}
        quantity = parse_quantity(payload.get("quantity"))

        order = repository.get(order_id)
        update_item_quantity(order, item_id, quantity, admin_user["_id"])

        commit(order, "item_updated")
        record_audit_log(
            admin_user,
            "Updated order item quantity",
            {"order_id": str(order["_id"]), "item_id": item_id, "quantity": quantity},
        )
        return order_response(order)

    @app.route("/api/orders/<order_id>/items/<item_id>", methods=["DELETE"])
    @jwt_required()
    def remove_order_item(order_id: str, item_id: str):
        admin_user = require_admin_user()
        order = repository.get(order_id)
        remove_item(order, item_id, admin_user["_id"])

        commit(order, "item_removed")
        record_audit_log(
            admin_user,
            "Removed order item",
            {"order_id": str(order["_id"]), "item_id": item_id},
        )
        return order_response(order)

    @app.route("/api/orders/<order_id>/fulfillment", methods=["PUT"])
    @jwt_required()
    def review_order_fulfillment(order_id: str):
        admin_user = require_admin_user()
        payload = request.get_json(silent=True) or {}

        order = repository.get(order_id)
        review_fulfillment(order, payload.get("items"))

        commit(order, "fulfillment_reviewed")
        record_audit_log(
            admin_user,
            "Reviewed order fulfillment",
            {"order_id": str(order["_id"]), "final_total": order.get("final_total")},
        )
        return order_response(order)

    # --- Riders ---

    @app.route("/api/riders/orders", methods=["GET"])
    @jwt_required()
    def list_rider_orders():
        current_user = load_current_user()
        role = user_role(current_user)
        if role == "admin":
            rider_id = repository.get_user(request.args.get("riderId"))
            rider_id = rider_id["_id"] if rider_id else current_user["_id"]
        elif role == "rider":
            rider_id = current_user["_id"]
        else:
            raise OrderForbiddenError("Forbidden - riders or admins only")

        orders = repository.list_for_rider(rider_id)
        return jsonify({"orders": repository.populate(orders)})

    @app.route("/api/admin/riders/live", methods=["GET"])
    @jwt_required()
    def list_live_riders():
        require_admin_user()
        riders = [serialize_rider(rider) for rider in repository.list_riders()]
        return jsonify({"success": True, "riders": riders})

    @app.route("/api/admin/riders/with-orders", methods=["GET"])
    @jwt_required()
    def list_riders_with_orders():
        require_admin_user()
        riders = [serialize_rider(rider) for rider in repository.list_riders()]
        orders = repository.populate(repository.list_dispatched())
        return jsonify({"riders": riders, "orders": orders})

    @app.route("/api/rider/destination", methods=["POST"])
    @jwt_required()
    def set_rider_destination():
        current_user = load_current_user()
        if user_role(current_user) not in ("rider", "admin"):
            raise OrderForbiddenError("Forbidden - riders or admins only")

        payload = request.get_json(silent=True) or {}
        start = payload.get("start")
        end = payload.get("end")
        if not start or not end:
            raise OrderValidationError("Start and end are required")

        route_plan = repository.set_route_plan(current_user["_id"], start, end)
        return jsonify(
            {"success": True, "routePlan": {"start": route_plan["start"], "end": route_plan["end"]}}
        )

    @app.route("/api/rider/orders/<order_id>/accept", methods=["POST"])
    @jwt_required()
    def rider_accept_order(order_id: str):
        return force_status(order_id, "shipped", "rider_accepted")

    @app.route("/api/rider/orders/<order_id>/deliver", methods=["POST"])
    @jwt_required()
    def rider_deliver_order(order_id: str):
        return force_status(order_id, "completed", "rider_delivered")

    @app.route("/api/rider/location", methods=["POST"])
    @jwt_required()
    def rider_location():
        current_user = load_current_user()
        if user_role(current_user) not in ("rider", "admin"):
            raise OrderForbiddenError("Forbidden - riders or admins only")

        payload = request.get_json(silent=True) or {}
        lat = parse_coordinate(payload.get("lat"))
        lng = parse_coordinate(payload.get("lng"))

        order_id = payload.get("orderId")
        if order_id:
            order = repository.get(order_id)
            if not can_view_order(current_user, order):
                raise OrderForbiddenError("Not your assigned order")
            order_id = str(order["_id"])

        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"current_location": {"lat": lat, "lng": lng}, "last_seen": datetime.utcnow()}},
        )
        events.rider_location(current_user, lat, lng, order_id)
        return jsonify({"success": True})

    # --- M-Pesa payments ---

    @app.route("/api/payments/mpesa/stk", methods=["POST"])
    @jwt_required()
    def mpesa_stk_push():
        current_user = load_current_user()
        payload = request.get_json(silent=True) or {}
        phone = str(payload.get("phone") or "").strip()
        if not phone:
            raise OrderValidationError("phone is required")

        order = repository.get(payload.get("orderId"))
        if user_role(current_user) != "admin" and str(order.get("user")) != str(current_user["_id"]):
            raise OrderForbiddenError("Forbidden")
        if is_locked(order):
            raise OrderLockedError()

        amount = round_money(order.get("final_total"))
        if amount <= 0:
            raise OrderValidationError("Order has nothing to pay")
        reference = order_reference(order["_id"])
        try:
            stk_response = mpesa.initiate_stk_push(app.config, phone, amount, reference)
        except mpesa.MpesaError as exc:
            app.logger.error("M-Pesa STK push for %s failed: %s", reference, exc)
            return jsonify({"message": "Mpesa STK failed"}), 502

        checkout_request_id = stk_response.get("CheckoutRequestID")
        if checkout_request_id:
            repository.set_checkout_request(order["_id"], checkout_request_id)

        app.logger.info("STK push started for %s (%s)", reference, checkout_request_id)
        return jsonify(stk_response)

    @app.route("/api/payments/mpesa/callback", methods=["POST"])
    def mpesa_callback():
        acknowledgement = jsonify({"ResultCode": 0, "ResultDesc": "Accepted"})

        expected_token = app.config.get("MPESA_CALLBACK_TOKEN")
        if not expected_token:
            app.logger.error("Rejected payment callback: MPESA_CALLBACK_TOKEN is not configured")
            return jsonify({"message": "Forbidden"}), 403
        provided_token = request.headers.get("X-Callback-Token") or request.args.get("token")
        if not hmac.compare_digest(str(provided_token or "").encode("utf-8"), expected_token.encode("utf-8")):
            app.logger.warning("Rejected payment callback with an invalid token")
            return jsonify({"message": "Forbidden"}), 403

        reference, checkout_request_id, payment_payload = mpesa.parse_callback(
            request.get_json(silent=True)
        )
        if payment_payload is None:
            app.logger.warning("Ignoring payment callback without a result for %s", reference)
            return acknowledgement

        for _ in range(PAYMENT_CALLBACK_ATTEMPTS):
            order = repository.find_for_payment(reference, checkout_request_id)
            if not order:
                app.logger.warning(
                    "Payment callback for unknown order reference %s (%s)",
                    reference,
                    checkout_request_id,
                )
                return acknowledgement

            previous_status = order.get("status")
            status_changed = apply_payment_result(order, payment_payload)
            try:
                commit(order, "payment", notify_subscribers=True)
            except OrderConflictError:
                continue

            if is_locked(order) and not status_changed:
                app.logger.warning(
                    "Payment result %s stored on %s order %s without a status change",
                    payment_payload.get("status"),
                    previous_status,
                    order["_id"],
                )
            else:
                app.logger.info(
                    "Payment %s for order %s: %s -> %s",
                    payment_payload.get("status"),
                    order["_id"],
                    previous_status,
                    order.get("status"),
                )
            return acknowledgement

        app.logger.error("Payment callback for %s kept conflicting; giving up", reference)
        return acknowledgement

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
