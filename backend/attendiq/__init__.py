"""Attendance Verification Engine - Application Factory."""
import logging
import os
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"]
)

def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    from attendiq.config import get_config
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)

    # Trust forwarded client addresses only from configured proxy hops
    if app.config.get('PROXY_FIX_X_FOR'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config['PROXY_FIX_X_FOR'])

    # Configure CORS
    CORS(app, origins=app.config.get('CORS_ORIGINS', ["*"]))

    # Setup logging
    setup_logging(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Setup database
    setup_database(app)

    # Add CLI commands
    register_commands(app)

    # Add health check
    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': 'Attendance Verification Engine',
            'version': '1.0.0'
        })

    return app

def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""
    from attendiq.api.attendance import attendance_bp
    from attendiq.api.sessions import sessions_bp
    from attendiq.api.anomalies import anomalies_bp

    app.register_blueprint(attendance_bp, url_prefix='/api/attendance')
    app.register_blueprint(sessions_bp, url_prefix='/api/attendance/sessions')
    app.register_blueprint(anomalies_bp, url_prefix='/api/attendance/anomalies')

def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from sqlalchemy.exc import SQLAlchemyError
    from werkzeug.exceptions import HTTPException
    from attendiq.utils.errors import AttendanceError
    from attendiq.utils.helpers import handle_error, error_response

    @app.errorhandler(AttendanceError)
    def attendance_error(error):
        db.session.rollback()
        app.logger.info('Rejected %s: %s (%s)', error.status_code, error.reason, error.message)
        return error_response(error.message, error.status_code, error.reason, **error.extra)

    @app.errorhandler(SQLAlchemyError)
    def store_unavailable(error):
        db.session.rollback()
        app.logger.error('Database error: %s', error)
        return error_response("Attendance store unavailable, try again", 503, 'store_unavailable')

    @app.errorhandler(400)
    def bad_request(error):
        return handle_error(error, 400)

    @app.errorhandler(401)
    def unauthorized(error):
        return handle_error(error, 401)

    @app.errorhandler(403)
    def forbidden(error):
        return handle_error(error, 403)

    @app.errorhandler(404)
    def not_found(error):
        return handle_error(error, 404)

    @app.errorhandler(429)
    def rate_limited(error):
        return handle_error(error, 429)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return handle_error(error, 500)

    @app.errorhandler(HTTPException)
    def handle_exception(e):
        return handle_error(e, e.code)

    # JWT error handlers
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            'error': True,
            'message': 'Token has expired',
            'status_code': 401
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return jsonify({
            'error': True,
            'message': 'Invalid token',
            'status_code': 401
        }), 401

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return jsonify({
            'error': True,
            'message': 'Authorization token required',
            'status_code': 401
        }), 401

def setup_logging(app: Flask) -> None:
    """Setup application logging."""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    app.logger.setLevel(level)

    if not app.debug and not app.testing:
        log_file = app.config.get('LOG_FILE') or 'logs/app.log'
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)

        app.logger.info('Attendance Verification Engine startup')

        if not app.config.get('REDIS_URL'):
            app.logger.warning('REDIS_URL not set, reverify notices will be dropped')

def setup_database(app: Flask) -> None:
    """Setup database connections."""
    with app.app_context():
        # Import all models
        from attendiq.models import (
            Organization, User, Course, Enrollment,
            AttendanceSession, AttendanceRecord, AnomalyEvent
        )

def register_commands(app: Flask) -> None:
    """Register CLI commands."""
    import click

    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop existing tables')
    def init_db(drop):
        """Initialize the database."""
        if drop:
            db.drop_all()
            click.echo('Dropped all tables.')

        db.create_all()
        click.echo('Created all tables.')

    @app.cli.command('seed-db')
    def seed_db():
        """Seed database with demo data and print bearer tokens."""
        from attendiq.services.seed_service import SeedService

        try:
            tokens = SeedService.seed_all()
        except Exception as e:
            db.session.rollback()
            raise click.ClickException(f'Error seeding database: {e}')

        click.echo('Database seeded successfully!')
        for email, token in tokens.items():
            click.echo(f'{email}: {token}')
