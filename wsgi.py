import os
from app import create_app, db

config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

# ── AUTO-CREATE TABLES ──
# Hosts without shell access: make sure the schema exists on startup
with app.app_context():
    try:
        db.create_all()
    except Exception as e:
        app.logger.error(f"Startup table creation failed: {e}")
        raise

if __name__ == "__main__":
    app.run()
