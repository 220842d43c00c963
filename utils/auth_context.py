from functools import wraps
from flask import g, jsonify
from security.session import get_session_from_request
from models import db
from models.user import User
from services.booking import Actor

def load_current_user():
    sess = get_session_from_request()
    if not sess:
        g.user = None
        g.session = None
        return
    g.session = sess
    user = db.session.get(User, sess.user_id)
    g.user = user if user is not None and user.is_active else None

def current_actor():
    user = g.user
    return Actor(user_id=user.id, roles=frozenset(user.role_names), email=user.email)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
