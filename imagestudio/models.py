import enum
from datetime import datetime, timezone

from .extensions import db


def utcnow():
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Tier(enum.Enum):
    FREE = "Free"
    PRO = "Pro"
    PRO_PLUS = "Pro Plus"


class Action(enum.Enum):
    GENERATE = "generate"
    EDIT = "edit"


# Monthly quota of generations + edits per tier
PLAN_LIMITS = {
    Tier.FREE: 5,
    Tier.PRO: 25,
    Tier.PRO_PLUS: 500,
}


# --- Subscriber Model ---
class Subscriber(db.Model):
    __tablename__ = "subscribers"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    user_id = db.Column(db.String(255), nullable=True)
    stripe_customer_id = db.Column(db.String(120), nullable=True)
    subscribed = db.Column(db.Boolean, default=False, nullable=False)
    # Raw tier label as written by billing sync; None while unsubscribed
    subscription_tier = db.Column(db.String(40), nullable=True)
    subscription_end = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "email": self.email,
            "user_id": self.user_id,
            "stripe_customer_id": self.stripe_customer_id,
            "subscribed": self.subscribed,
            "subscription_tier": self.subscription_tier,
            "subscription_end": _iso(self.subscription_end),
            "updated_at": _iso(self.updated_at),
        }


# --- Usage Model ---
class UsageRecord(db.Model):
    __tablename__ = "usage_tracking"
    __table_args__ = (
        db.UniqueConstraint("email", "current_period_start", name="uq_usage_email_period"),
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    user_id = db.Column(db.String(255), nullable=True)
    generation_count = db.Column(db.Integer, default=0, nullable=False)
    edit_count = db.Column(db.Integer, default=0, nullable=False)
    total_usage = db.Column(db.Integer, default=0, nullable=False)
    # Half-open window [current_period_start, current_period_end)
    current_period_start = db.Column(db.DateTime, nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def is_current(self, now=None):
        now = now or utcnow()
        return self.current_period_start <= now < self.current_period_end

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "user_id": self.user_id,
            "generation_count": self.generation_count,
            "edit_count": self.edit_count,
            "total_usage": self.total_usage,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "updated_at": _iso(self.updated_at),
        }


# --- Generated image history ---
class GeneratedImage(db.Model):
    __tablename__ = "generated_images"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False)
    prompt = db.Column(db.Text, nullable=False)
    generation_type = db.Column(db.String(20), nullable=False)  # 'generate' | 'edit'
    model_used = db.Column(db.String(120), nullable=True)
    file_path = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "prompt": self.prompt,
            "generation_type": self.generation_type,
            "model_used": self.model_used,
            "image_url": f"/images/{self.id}/file",
            "created_at": _iso(self.created_at),
        }


def _iso(value):
    return value.isoformat() if value else None
