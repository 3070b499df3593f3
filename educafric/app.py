import logging
import os
from datetime import datetime

from flask import Flask, jsonify

from .academics import academics_bp
from .auth import auth_bp, devices_bp
from .bulk_import import bulk_bp
from .bulletins import bulletins_bp
from .config import INSTANCE_PATH, config_by_name
from .errors import register_error_handlers
from .extensions import csrf, db
from .fees import fees_bp
from .models import ROLE_SITE_ADMIN, School, User
from .online_classes import online_classes_bp
from .sandbox import sandbox_bp, seed_sandbox
from .security import init_security
from .signatures import bulletin_signatures_bp, signatures_bp
from .subscriptions import admin_bp
from .transport import transport_bp
from .verification import init_verification, verification_bp

logger = logging.getLogger(__name__)

BLUEPRINTS = (
    auth_bp,
    devices_bp,
    academics_bp,
    bulletins_bp,
    signatures_bp,
    bulletin_signatures_bp,
    verification_bp,
    bulk_bp,
    fees_bp,
    online_classes_bp,
    admin_bp,
    transport_bp,
    sandbox_bp,
)


def create_app(config_name=None):
    config_name = config_name or os.environ.get('FLASK_ENV', 'default')
    config_class = config_by_name.get(config_name, config_by_name['default'])

    app = Flask(__name__, instance_path=INSTANCE_PATH)
    app.config.from_object(config_class)
    config_class.init_app(app)

    logging.basicConfig(level=logging.DEBUG if app.config['DEBUG'] else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # Set up instance path for SQLite and other app data
    if not app.config['TESTING']:
        os.makedirs(app.instance_path, exist_ok=True)

    if app.config.get('PROXY_FIX'):
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    csrf.init_app(app)
    init_security(app)
    register_error_handlers(app, db)
    init_verification(app)

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)

    # Health check endpoint for external monitoring
    @app.route('/health')
    def health():
        return jsonify({
            'status': 'ok',
            'service': 'educafric-backend',
            'timestamp': datetime.utcnow().isoformat() + 'Z'
        })

    register_commands(app)
    return app


def create_default_school_and_admin(app):
    """Creates a default school and a site admin if the database has no users."""
    admin_username = app.config.get('DEFAULT_USERNAME')
    admin_password = app.config.get('DEFAULT_PASSWORD')

    if not admin_username or not admin_password:
        logger.warning("DEFAULT_USERNAME and/or DEFAULT_PASSWORD are not set. Skipping default admin creation.")
        return None

    if User.query.first() is not None:
        return None

    logger.info("No users found in the database. Creating default school and admin user...")
    default_school = School.query.filter_by(name='Default School').first()
    if not default_school:
        default_school = School(name='Default School', is_active=True, is_blocked=False,
                                subscription_status='active', subscription_type='absolute')
        db.session.add(default_school)
        db.session.flush()

    admin_user = User(username=admin_username, role=ROLE_SITE_ADMIN, school_id=None, is_active=True,
                      password_change_required=False)
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()
    logger.info("Default admin '%s' created", admin_username)
    return admin_user


def register_commands(app):
    @app.cli.command('init-db')
    def init_db():
        """Create tables and the default admin user."""
        db.create_all()
        create_default_school_and_admin(app)
        print("Database initialization completed successfully!")

    @app.cli.command('seed-sandbox')
    def seed_sandbox_command():
        """Create or refresh the sandbox demo school."""
        school = seed_sandbox()
        print(f"Sandbox school ready: {school.name} (id={school.id})")
