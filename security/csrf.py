import hmac
from flask import request, jsonify

# Double-submit cookie: the auth service sets the cookie, the client echoes it
CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

def require_csrf():
    cookie_token = request.cookies.get(CSRF_COOKIE)
    header_token = request.headers.get(CSRF_HEADER)
    if not cookie_token or not header_token or not hmac.compare_digest(cookie_token, header_token):
        return jsonify(error="CSRF validation failed"), 403
    return None
