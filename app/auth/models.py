import enum
from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash
from app import db


class RoleEnum(enum.Enum):
    admin = "admin"     # owner: deletes members, goodwill redemptions, audits
    staff = "staff"     # counter: enrol, punch, redeem full cards


class User(db.Model):
    """A login for the loyalty back office."""
    __tablename__ = 'staff_users'

    id            = db.Column(db.Integer, primary_key=True)
    name          = db.Column(db.String(120), nullable=False)
    username      = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role          = db.Column(db.Enum(RoleEnum), nullable=False, default=RoleEnum.staff)
    created_at    = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_login_at = db.Column(db.DateTime, nullable=True)

    def set_password(self, plain_password: str) -> None:
        self.password_hash = generate_password_hash(plain_password)

    def check_password(self, plain_password: str) -> bool:
        return check_password_hash(self.password_hash, plain_password)

    def record_login(self, when: datetime = None) -> None:
        self.last_login_at = when or datetime.utcnow()

    def to_dict(self) -> dict:
        return {
            'id':   self.id,
            'name': self.name,
            'role': self.role.value,
            'last_login_at': self.last_login_at.isoformat() if self.last_login_at else None,
        }

    def __repr__(self) -> str:
        return f"<User {self.username!r} {self.role.value}>"
