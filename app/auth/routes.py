from flask import jsonify, request, session, current_app
from app import db
from app.auth import auth
from app.auth.models import User


def _login_limiter():
    return current_app.extensions['login_limiter']


@auth.route('/login', methods=['POST'])
def login():
    """
    Accepts form or JSON {username, password}.
    Populates the session on success; throttled per client address.
    """
    data     = request.get_json(silent=True) or request.form
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    limiter = _login_limiter()
    key     = f'login:{request.remote_addr}'
    verdict = limiter.check(key)
    if not verdict.allowed:
        current_app.logger.warning(f"Login throttled for {request.remote_addr}")
        resp = jsonify({'error': verdict.message})
        resp.headers['Retry-After'] = str(int(verdict.retry_after or 0) or 1)
        return resp, 429

    # Basic presence validation
    if not username or not password:
        return jsonify({'error': 'Username and password are required.'}), 400

    user = User.query.filter_by(username=username).first()
    if user is None or not user.check_password(password):
        # Vague on purpose: don't reveal which field was wrong
        current_app.logger.warning(f"Failed login attempt for username: {username}")
        return jsonify({'error': 'Invalid username or password.'}), 401

    # ── Populate session (minimal) ──
    session.clear()
    session['user_id'] = user.id
    session['role']    = user.role.value  # 'admin' or 'staff'
    session.permanent  = True             # respect PERMANENT_SESSION_LIFETIME
    limiter.reset(key)

    user.record_login()
    db.session.commit()

    current_app.logger.info(f"User {user.username} logged in successfully.")
    return jsonify(user.to_dict())


@auth.route('/logout', methods=['POST'])
def logout():
    """Clear the session."""
    session.clear()
    return '', 204
