"""QR Attendance Gate - Application Factory."""
import atexit
import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()


def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    from qr_attendance.config import get_config, store_engine_options
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)
    app.config.setdefault(
        'SQLALCHEMY_ENGINE_OPTIONS',
        store_engine_options(
            app.config.get('SQLALCHEMY_DATABASE_URI'),
            app.config['ATTENDANCE_STORE_TIMEOUT_SECONDS']
        )
    )

    if not app.config.get('QR_SECRET_KEY'):
        raise RuntimeError('QR_SECRET_KEY must be set')

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)

    # Configure CORS
    CORS(app, origins=app.config.get('CORS_ORIGINS', ["*"]))

    # Setup logging
    setup_logging(app)

    # Attendance services
    setup_services(app)

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
            'service': 'QR Attendance Gate',
            'version': '1.0.0',
            'live_sessions': len(app.extensions['session_store'])
        })

    return app


def setup_services(app: Flask) -> None:
    """Build the session and submission services for this app."""
    from qr_attendance.services.attendance_service import SignatureLimits, SubmissionPipeline
    from qr_attendance.services.policy_service import PolicyDefaults
    from qr_attendance.services.qr_service import RedeemTokenCodec
    from qr_attendance.services.rate_limiter import RateLimiter
    from qr_attendance.services.repository import SqlAttendanceRepository
    from qr_attendance.services.session_service import SessionService
    from qr_attendance.services.session_store import SessionStore

    session_store = SessionStore()
    session_store.init_app(app)

    rate_limiter = RateLimiter()
    rate_limiter.init_app(app)

    repository = SqlAttendanceRepository(app)
    token_codec = RedeemTokenCodec(
        app.config['QR_SECRET_KEY'],
        redemption_window_seconds=app.config['QR_REDEMPTION_WINDOW_SECONDS']
    )
    policy_defaults = PolicyDefaults.from_config(app.config)

    app.extensions['attendance_repository'] = repository
    app.extensions['session_service'] = SessionService(
        session_store=session_store,
        token_codec=token_codec,
        rate_limiter=rate_limiter,
        repository=repository,
        base_url=app.config['APP_BASE_URL'],
        policy_defaults=policy_defaults
    )
    pipeline = SubmissionPipeline(
        session_store=session_store,
        token_codec=token_codec,
        repository=repository,
        policy_defaults=policy_defaults,
        signature_limits=SignatureLimits.from_config(app.config),
        store_timeout=app.config['ATTENDANCE_STORE_TIMEOUT_SECONDS'],
        lookup_workers=app.config['ATTENDANCE_LOOKUP_WORKERS']
    )
    app.extensions['submission_pipeline'] = pipeline
    atexit.register(pipeline.close)


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""
    from qr_attendance.api.attendance import attendance_bp
    from qr_attendance.api.courses import courses_bp
    from qr_attendance.api.qr import qr_bp, redeem_bp

    app.register_blueprint(qr_bp, url_prefix='/api/sessions')
    app.register_blueprint(attendance_bp, url_prefix='/api/attendance')
    app.register_blueprint(courses_bp, url_prefix='/api/courses')
    app.register_blueprint(redeem_bp)


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from werkzeug.exceptions import HTTPException

    from qr_attendance.utils.errors import (
        AttendanceError, RateLimitExceeded, TransientStoreError
    )
    from qr_attendance.utils.helpers import error_response, handle_error
    from qr_attendance.utils.validators import ValidationError

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

    @app.errorhandler(405)
    def method_not_allowed(error):
        return handle_error(error, 405)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return handle_error("Internal server error", 500)

    @app.errorhandler(HTTPException)
    def handle_exception(e):
        return handle_error(e, e.code)

    @app.errorhandler(ValidationError)
    def validation_error(e):
        return error_response(str(e), e.status_code)

    @app.errorhandler(RateLimitExceeded)
    def rate_limited(e):
        response, status = error_response(
            e.message, e.status_code, retry_after=e.retry_after
        )
        response.headers['Retry-After'] = str(e.retry_after)
        return response, status

    @app.errorhandler(TransientStoreError)
    def store_unavailable(e):
        return error_response(e.message, e.status_code, retryable=True)

    @app.errorhandler(AttendanceError)
    def attendance_error(e):
        category = e.category.value if e.category else None
        return error_response(e.message, e.status_code, category=category)

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
    package_logger = logging.getLogger('qr_attendance')
    package_logger.setLevel(level)

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
        if not any(isinstance(h, logging.FileHandler) for h in package_logger.handlers):
            package_logger.addHandler(file_handler)

        app.logger.setLevel(level)
        app.logger.info('QR Attendance Gate startup')


def setup_database(app: Flask) -> None:
    """Setup database connections."""
    with app.app_context():
        # Import all models
        from qr_attendance.models import AttendanceRecord, Course, CourseEnrollment  # noqa: F401


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

    @app.cli.command('seed-demo')
    @click.option('--institution', default='demo-institution', help='Institution id')
    def seed_demo(institution):
        """Seed a demo course with a geofence and one roster entry."""
        from qr_attendance.models import Course, CourseEnrollment

        db.create_all()
        course = Course.query.filter_by(
            institution_id=institution, code='CS101', section='A'
        ).first()
        if course:
            click.echo(f'Demo course already exists: id={course.id}')
            return

        course = Course(
            institution_id=institution,
            code='CS101',
            name='Introduction to Computing',
            section='A',
            delivery_mode='in_person',
            attendance_policy={
                'single_device_per_day': True,
                'require_signature': True,
                'require_enrollment': True,
                'require_geofence': True,
                'geofence': {'lat': 31.5204, 'lng': 74.3587, 'radius_meters': 120}
            }
        )
        db.session.add(course)
        db.session.flush()
        db.session.add(CourseEnrollment(
            institution_id=institution,
            course_id=course.id,
            university_roll_no='2023-CS-001',
            email='student@example.com',
            full_name='Demo Student',
            section='A',
            class_roll_no='1'
        ))
        db.session.commit()
        click.echo(f'Created demo course CS101-A: id={course.id}')
