import uuid, json
from sqlalchemy.orm import Session
from app.models.activity_log import ActivityLog

def log_activity(db: Session, booking_id: str, action: str, details: dict | None = None, user_id: str | None = None):
    db.add(ActivityLog(
        id=str(uuid.uuid4()),
        booking_id=booking_id,
        user_id=user_id,
        action=action,
        entity_type="booking",
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
    ))

def activity_details(entry: ActivityLog) -> dict:
    return json.loads(entry.details_json or "{}")
