"""
app/loyalty/__init__.py
-----------------------
Punch-card loyalty blueprint (staff only).
URL prefix: /loyalty
"""
from flask import Blueprint

loyalty = Blueprint('loyalty', __name__)

from app.loyalty import routes  # noqa: E402, F401
from app.loyalty import models  # noqa: E402, F401  registers LoyaltyMember/LoyaltyHistory with SQLAlchemy
