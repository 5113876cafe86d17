import logging
import os

from flask import Blueprint, abort, current_app, jsonify, request, send_file
from flask_login import current_user, login_required
from sqlalchemy.exc import SQLAlchemyError

from .billing import get_billing_provider
from .billing_sync import handle_webhook
from .enforcement import enforce_and_record, record_usage, refund_usage
from .entitlements import refresh_from_billing_provider
from .errors import ProviderError, StoreError, StudioError, ValidationError, WebhookError
from .extensions import db
from .identity import bearer_credential
from .images import get_image_provider, load_input_image, save_output
from .ledger import usage_summary
from .logs import log_step
from .models import Action, GeneratedImage

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


@api.get("/health")
def health():
    return jsonify(status="ok")


def _json_object():
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# -----------------------
# Usage metering
# -----------------------
@api.post("/track-usage")
def track_usage():
    body = _json_object()
    action = body.get("action")
    if not action:
        raise ValidationError("Action is required")
    log_step(logger, "Action received", action=action)

    result = enforce_and_record(bearer_credential(request.headers.get("Authorization")), action)
    return jsonify(result.to_dict()), 200


@api.get("/usage")
@login_required
def usage():
    return jsonify(usage_summary(current_user.email))


# -----------------------
# Billing
# -----------------------
@api.post("/check-subscription")
@login_required
def check_subscription():
    info = refresh_from_billing_provider(current_user)
    return jsonify(info.to_dict()), 200


@api.post("/customer-portal")
@login_required
def customer_portal():
    billing = get_billing_provider()
    customers = billing.list_customers_by_email(current_user.raw_email or current_user.email)
    if not customers:
        raise ProviderError("No Stripe customer found for this user", step="customer-portal", status_code=404)
    return_url = (request.headers.get("Origin") or current_app.config["APP_BASE_URL"]).rstrip("/") + "/"
    url = billing.create_portal_session(customers[0]["id"], return_url)
    log_step(logger, "Customer portal session created", customer_id=customers[0]["id"])
    return jsonify(url=url), 200


@api.post("/stripe/webhook")
def stripe_webhook():
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        handle_webhook(payload, sig_header)
    except WebhookError:
        raise
    except StudioError as e:
        log_step(logger, "ERROR in stripe-webhook", logging.ERROR, message=e.message)
        return jsonify(error=e.message), 500
    return jsonify(received=True), 200


# -----------------------
# Metered image actions
# -----------------------
def _run_metered(action, prompt, call):
    identity = current_user._get_current_object()
    accepted = record_usage(identity, action)
    provider = get_image_provider()
    try:
        image = call(provider)
        path = save_output(image, identity.user_id, action.value)
        entry = GeneratedImage(
            user_id=identity.user_id,
            email=identity.email,
            prompt=prompt,
            generation_type=action.value,
            model_used=provider.model,
            file_path=path,
        )
        db.session.add(entry)
        db.session.commit()
    except ProviderError:
        refund_usage(identity, action)
        raise
    except (OSError, SQLAlchemyError) as e:
        db.session.rollback()
        log_step(logger, "Failed to store generated image", logging.ERROR, error=str(e))
        refund_usage(identity, action)
        raise StoreError("failed to store generated image") from e

    return jsonify(
        data=[{"url": entry.to_dict()["image_url"]}],
        image=entry.to_dict(),
        usage=accepted.usage,
        limit=accepted.limit,
        remaining=accepted.remaining,
    ), 200


@api.post("/generate-image")
@login_required
def generate_image():
    body = _json_object()
    prompt = (body.get("prompt") or "").strip()
    if not prompt:
        raise ValidationError("Prompt is required")
    return _run_metered(Action.GENERATE, prompt, lambda provider: provider.generate(prompt))


@api.post("/edit-image")
@login_required
def edit_image():
    file = request.files.get("image")
    prompt = (request.form.get("prompt") or "").strip()
    if not file or not file.filename or not prompt:
        raise ValidationError("Image and prompt are required")
    source = load_input_image(file.read())
    return _run_metered(Action.EDIT, prompt, lambda provider: provider.edit(source, prompt))


# -----------------------
# History
# -----------------------
def _owned_image(image_id):
    entry = GeneratedImage.query.filter_by(id=image_id, user_id=current_user.user_id).first()
    if entry is None:
        abort(404)
    return entry


@api.get("/images")
@login_required
def list_images():
    entries = (
        GeneratedImage.query.filter_by(user_id=current_user.user_id)
        .order_by(GeneratedImage.created_at.desc(), GeneratedImage.id.desc())
        .all()
    )
    return jsonify(images=[entry.to_dict() for entry in entries])


@api.get("/images/<int:image_id>/file")
@login_required
def image_file(image_id):
    entry = _owned_image(image_id)
    if not os.path.exists(entry.file_path):
        abort(404)
    return send_file(os.path.abspath(entry.file_path), mimetype="image/png")


@api.delete("/images/<int:image_id>")
@login_required
def delete_image(image_id):
    entry = _owned_image(image_id)
    if os.path.exists(entry.file_path):
        os.remove(entry.file_path)
    db.session.delete(entry)
    db.session.commit()
    return jsonify(deleted=True)
