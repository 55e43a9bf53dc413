import click
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from config import config

db = SQLAlchemy()


def create_app(config_name='default'):
    """Application factory: creates and configures the Flask app."""
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    app.config['ENV_NAME'] = config_name

    # ── Logging ───────────────────────────────────────────────────
    from app.utils.logging import setup_logging
    setup_logging(app)

    # ── Extensions ────────────────────────────────────────────────
    db.init_app(app)

    # One limiter per app instance; tests get a fresh one each time
    from app.utils.ratelimit import RateLimiter
    app.extensions['login_limiter'] = RateLimiter(
        max_attempts=app.config['LOGIN_RATE_LIMIT_ATTEMPTS'],
        window_seconds=app.config['LOGIN_RATE_LIMIT_WINDOW'],
        block_seconds=app.config['LOGIN_RATE_LIMIT_BLOCK'],
    )

    # ── Blueprints ────────────────────────────────────────────────
    from app.main import main as main_blueprint
    app.register_blueprint(main_blueprint)

    from app.auth import auth as auth_blueprint
    app.register_blueprint(auth_blueprint, url_prefix='/auth')

    from app.loyalty import loyalty as loyalty_blueprint
    app.register_blueprint(loyalty_blueprint, url_prefix='/loyalty')

    # ── Error Handlers ────────────────────────────────────────────
    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({'error': 'Please log in to access this page.'}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({'error': 'Access denied.'}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found.'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({'error': 'Server error.'}), 500

    # ── CLI Commands ──────────────────────────────────────────────
    register_commands(app)

    # ── ProxyFix (HTTPS termination at the platform edge) ─────────
    from werkzeug.middleware.proxy_fix import ProxyFix
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    return app


def register_commands(app):
    """Register custom Flask CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all database tables."""
        db.create_all()
        click.echo('✅  Database tables created.')

    def _create_user(name, username, password, role):
        from app.auth.models import User

        if User.query.filter_by(username=username).first():
            click.echo(f'⚠️  User "{username}" already exists.')
            return

        user = User(name=name, username=username, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f'✅  {role.value.title()} user "{username}" created successfully.')

    @app.cli.command('seed-admin')
    @click.option('--name',     prompt='Full name',  help='Admin full name')
    @click.option('--username', prompt='Username',   help='Admin username')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Admin password')
    def seed_admin(name, username, password):
        """Create the initial admin user."""
        from app.auth.models import RoleEnum
        _create_user(name, username, password, RoleEnum.admin)

    @app.cli.command('seed-staff')
    @click.option('--name',     prompt='Full name',  help='Staff full name')
    @click.option('--username', prompt='Username',   help='Staff username')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Staff password')
    def seed_staff(name, username, password):
        """Create a counter-staff user."""
        from app.auth.models import RoleEnum
        _create_user(name, username, password, RoleEnum.staff)

    @app.cli.command('seed-demo')
    def seed_demo():
        """Populate database with demo staff and loyalty members."""
        import random
        from app.auth.models import User, RoleEnum
        from app.loyalty.models import LoyaltyMember
        from app.loyalty.service import LoyaltyService
        from app.loyalty.errors import ServiceError

        click.echo("🌱 Seeding demo data...")
        db.create_all()

        if not User.query.filter_by(username='admin').first():
            u = User(name='Admin User', username='admin', role=RoleEnum.admin)
            u.set_password('demo123')
            db.session.add(u)
        if not User.query.filter_by(username='staff1').first():
            u = User(name='Counter Staff', username='staff1', role=RoleEnum.staff)
            u.set_password('123')
            db.session.add(u)
        db.session.commit()
        click.echo("✅ Users created (admin/demo123, staff1/123).")

        if LoyaltyMember.query.count() >= 5:
            click.echo("ℹ️   Loyalty members already present.")
            return

        service = LoyaltyService()
        names = ['Ana', 'Ben', 'Carla', 'Dev', 'Elle', 'Frank', 'Gia', 'Hugo', 'Ivy', 'Jon']
        for i, name in enumerate(names):
            phone = f'817555{i:04d}'
            try:
                member = service.create(phone, f'{name} Demo', None)
            except ServiceError as e:
                click.echo(f'⚠️  {phone}: {e.message}')
                continue
            extra = random.randint(0, 8)
            if extra:
                service.add_punches(member.id, member.punches, member.total_punches, extra)
        click.echo("✅ Loyalty members seeded.")

    @app.cli.command('loyalty-reconcile')
    def loyalty_reconcile():
        """Compare every cached punch balance with its ledger."""
        from app.loyalty.service import LoyaltyService

        results = LoyaltyService.from_config(app.config).reconcile_all()
        mismatches = [r for r in results if not r.consistent]
        for r in mismatches:
            click.echo(f'❌ #{r.member_id} {r.name}: cached {r.cached}, ledger says {r.replayed}')
            app.logger.warning(
                f"Ledger mismatch for member {r.member_id}: cached={r.cached} replayed={r.replayed}"
            )
        click.echo(f'Checked {len(results)} member(s), {len(mismatches)} mismatch(es).')
