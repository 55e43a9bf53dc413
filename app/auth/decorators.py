"""
app/auth/decorators.py
----------------------
Reusable route-protection decorators.
Usage:
    from app.auth.decorators import login_required, admin_required

    @loyalty.route('/members')
    @login_required
    def list_members():
        ...

    @loyalty.route('/members/<int:member_id>', methods=['DELETE'])
    @admin_required
    def delete_member(member_id):
        ...
"""
from functools import wraps
from flask import session, abort


def login_required(f):
    """
    Reject with 401 if no staff member is logged in.
    Checks for 'user_id' key in the Flask session.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            abort(401)
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """
    Allow access only to users with role == 'admin'.
    Implies login_required: unauthenticated users get 401.
    Authenticated non-admins receive a 403 Forbidden response.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            abort(401)
        if session.get('role') != 'admin':
            abort(403)
        return f(*args, **kwargs)
    return decorated
