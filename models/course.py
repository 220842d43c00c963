from datetime import datetime
from models.db import db

class Course(db.Model):
    """Read-only view of the course catalogue, used for offering ownership checks."""
    __tablename__ = "courses"

    id = db.Column(db.String(36), primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    is_published = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
