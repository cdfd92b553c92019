"""
Online Recommendation API Service

Flask web service over RecommendationService.

Endpoints:
- GET  /health                         service, model, cache and queue status
- POST /feedback                       ingest one feedback event (JSON body)
- GET  /recommend/<user_id>?n=         ranked recommendations with explanations
- GET  /predict/<user_id>/<item_id>    single prediction
- GET  /metrics                        rolling online learning metrics
- GET  /queue                          update queue status
- GET  /                               service information

Enhanced with:
- Request validation (validator class + decorator)
- Malformed request logging
- JSON error handlers
"""

import logging
import os
import re
import time
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from .. import config
from ..events import Priority
from ..exceptions import InvalidFeedbackValue, NotInitialized
from ..service import RecommendationService, build_default_service

load_dotenv()

_handlers = [logging.StreamHandler()]
if os.getenv("API_LOG_FILE"):
    _handlers.append(logging.FileHandler(os.getenv("API_LOG_FILE")))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=_handlers
)
logger = logging.getLogger(__name__)

# Separate logger for malformed requests
malformed_logger = logging.getLogger('malformed_requests')
malformed_logger.setLevel(logging.WARNING)

app = Flask(__name__)


class RequestValidator:
    """
    Validates API requests for correct format and content.
    """

    IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_.:\-]{1,128}$')
    MIN_RECOMMENDATIONS = 1
    MAX_RECOMMENDATIONS = config.SERVING_CONFIG['max_recommendations']

    @classmethod
    def validate_identifier(cls, name: str, value: Any) -> Tuple[bool, Optional[str]]:
        """
        Validate a user or item identifier (1-128 chars of [A-Za-z0-9_.:-]).

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None or value == '':
            return False, f"{name} is required and cannot be empty"

        if isinstance(value, bool) or not isinstance(value, (str, int)):
            return False, f"{name} must be a string or integer, got {type(value).__name__}"

        if not cls.IDENTIFIER_PATTERN.match(str(value)):
            return False, f"{name} contains invalid characters or is too long: '{value}'"

        return True, None

    @classmethod
    def validate_n_recommendations(cls, n: Any) -> Tuple[bool, Optional[str], Optional[int]]:
        """
        Validate n parameter - must be positive integer up to MAX_RECOMMENDATIONS.

        Returns:
            Tuple of (is_valid, error_message, parsed_value)
        """
        if n is None:
            return True, None, config.SERVING_CONFIG['default_recommendations']

        try:
            n_int = int(n)
        except (ValueError, TypeError):
            return False, f"n must be a positive integer, got '{n}'", None

        if n_int < cls.MIN_RECOMMENDATIONS:
            return False, f"n must be at least {cls.MIN_RECOMMENDATIONS}, got {n_int}", None

        if n_int > cls.MAX_RECOMMENDATIONS:
            return False, f"n cannot exceed {cls.MAX_RECOMMENDATIONS}, got {n_int}", None

        return True, None, n_int

    @classmethod
    def validate_feedback(cls, payload: Any) -> Tuple[bool, Optional[str]]:
        """Structural checks on a /feedback body; value range is checked by the service."""
        if not isinstance(payload, dict):
            return False, "Request body must be a JSON object"

        for field in ('user_id', 'item_id'):
            is_valid, error_msg = cls.validate_identifier(field, payload.get(field))
            if not is_valid:
                return False, error_msg

        if 'value' not in payload:
            return False, "value is required"

        priority = payload.get('priority')
        if priority is not None:
            try:
                Priority.parse(priority)
            except ValueError as e:
                return False, str(e)

        action = payload.get('action', 'rate')
        if not isinstance(action, str) or not action:
            return False, "action must be a non-empty string"

        return True, None


def log_malformed_request(error_type: str, details: Dict) -> None:
    """Log malformed request with detailed information."""
    log_entry = {
        'timestamp': datetime.now().isoformat(),
        'error_type': error_type,
        'ip': request.remote_addr,
        'endpoint': request.endpoint,
        'path': request.path,
        'method': request.method,
        'user_agent': request.headers.get('User-Agent', 'Unknown'),
        'details': details
    }

    malformed_logger.warning(f"{error_type}: {log_entry}")


def _invalid(message: str, **extra):
    return jsonify({'error': 'Invalid request', 'message': message, **extra}), 400


def validate_request(f):
    """
    Decorator to validate path identifiers and the n query parameter.
    Logs malformed requests before rejecting them with 400.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        for field in ('user_id', 'item_id'):
            if field not in kwargs:
                continue
            is_valid, error_msg = RequestValidator.validate_identifier(field, kwargs[field])
            if not is_valid:
                log_malformed_request(f'INVALID_{field.upper()}', {field: kwargs[field], 'error': error_msg})
                return _invalid(error_msg, **{field: kwargs[field]})

        if 'user_id' in kwargs and 'item_id' not in kwargs:
            n = request.args.get('n', None)
            is_valid, error_msg, parsed_n = RequestValidator.validate_n_recommendations(n)
            if not is_valid:
                log_malformed_request('INVALID_PARAMETER', {'parameter': 'n', 'value': n, 'error': error_msg})
                return _invalid(error_msg, parameter='n')
            kwargs['n_recommendations'] = parsed_n

        return f(*args, **kwargs)

    return decorated_function


# Global service instance
recommender: Optional[RecommendationService] = None


def initialize_service(service: Optional[RecommendationService] = None) -> RecommendationService:
    """
    Initialize the recommendation service on startup.

    Args:
        service: Prebuilt service (tests); the default service is built otherwise
    """
    global recommender

    recommender = service or build_default_service()
    logger.info("Recommendation service initialized")
    return recommender


def _get_service() -> RecommendationService:
    if recommender is None:
        logger.warning("Recommendation service not initialized, initializing now")
        return initialize_service()
    return recommender


@app.errorhandler(400)
def bad_request(error):
    """Handle 400 Bad Request errors."""
    return jsonify({
        'error': 'Bad Request',
        'message': 'The request was malformed or invalid'
    }), 400


@app.errorhandler(404)
def not_found(error):
    """Handle 404 Not Found errors."""
    log_malformed_request('ENDPOINT_NOT_FOUND', {'path': request.path, 'method': request.method})
    return jsonify({
        'error': 'Not Found',
        'message': 'The requested endpoint does not exist',
        'available_endpoints': ['/health', '/feedback', '/recommend/<user_id>',
                                '/predict/<user_id>/<item_id>', '/metrics', '/queue', '/']
    }), 404


@app.errorhandler(405)
def method_not_allowed(error):
    """Handle 405 Method Not Allowed errors."""
    allowed = list(error.valid_methods) if getattr(error, 'valid_methods', None) else []
    log_malformed_request('METHOD_NOT_ALLOWED', {
        'path': request.path,
        'method': request.method,
        'allowed_methods': allowed
    })
    return jsonify({
        'error': 'Method Not Allowed',
        'message': f'The {request.method} method is not allowed for this endpoint',
        'allowed_methods': allowed
    }), 405


@app.errorhandler(500)
def internal_error(error):
    """Handle 500 Internal Server Error."""
    logger.error(f"Internal server error: {error}", exc_info=True)
    return jsonify({
        'error': 'Internal Server Error',
        'message': 'An unexpected error occurred'
    }), 500


@app.before_request
def log_request():
    """Log all incoming requests."""
    logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    if recommender is None:
        return jsonify({
            'status': 'starting',
            'model_loaded': False,
            'timestamp': datetime.now().isoformat()
        })

    details = recommender.health()
    return jsonify({
        'status': 'healthy' if details['model']['is_initialized'] else 'degraded',
        'model_loaded': details['model']['is_initialized'],
        'cache': details['cache'],
        'queue': details['queue'],
        'timestamp': datetime.now().isoformat()
    })


@app.route('/feedback', methods=['POST'])
def record_feedback():
    """
    Ingest one feedback event.

    Body (JSON):
        {"user_id": "42", "item_id": "m7", "value": 8, "priority": "high", "action": "rate"}

    Returns:
        202 once the event is cached and enqueued

    Error Responses:
        400: Malformed body, unknown priority or value outside the rating range
        503: Service shutting down
    """
    payload = request.get_json(silent=True)
    is_valid, error_msg = RequestValidator.validate_feedback(payload)
    if not is_valid:
        log_malformed_request('INVALID_FEEDBACK', {'body': payload, 'error': error_msg})
        return _invalid(error_msg)

    service = _get_service()
    try:
        service.record_feedback(
            user_id=str(payload['user_id']),
            item_id=str(payload['item_id']),
            value=payload['value'],
            priority=payload.get('priority'),
            action=payload.get('action', 'rate'),
        )
    except InvalidFeedbackValue as e:
        log_malformed_request('INVALID_FEEDBACK_VALUE', {'body': payload, 'error': str(e)})
        return _invalid(str(e), parameter='value')
    except RuntimeError as e:
        logger.warning(f"Feedback rejected: {e}")
        return jsonify({'error': 'Service error', 'message': str(e)}), 503

    return jsonify({'status': 'accepted', 'queue': service.get_queue_status()['length']}), 202


@app.route('/recommend/<user_id>', methods=['GET'])
@validate_request
def recommend(user_id, n_recommendations=None):
    """
    Get recommendations for a user.

    Query Parameters:
        n: Number of recommendations to return (1-100, default: 20)

    Returns:
        JSON list of {item_id, score, explanation, reasons}

    Example:
        GET /recommend/12345?n=10
    """
    start_time = time.time()
    service = _get_service()

    try:
        recommendations = service.recommend(user_id, n_recommendations)
    except NotInitialized as e:
        logger.error(f"Recommend called before model initialization: {e}")
        return jsonify({'error': 'Service error', 'message': 'Model not available'}), 503

    response_time = time.time() - start_time
    logger.info(
        f"SUCCESS - user={user_id}, n_requested={n_recommendations}, "
        f"n_returned={len(recommendations)}, response_time={response_time:.3f}s"
    )

    if response_time * 1000 > config.SERVING_CONFIG['timeout_ms']:
        logger.warning(f"SLOW_RESPONSE: {response_time:.3f}s for user {user_id}")

    return jsonify({
        'user_id': user_id,
        'recommendations': [r.to_dict() for r in recommendations],
        'latency_ms': int(response_time * 1000)
    })


@app.route('/predict/<user_id>/<item_id>', methods=['GET'])
@validate_request
def predict(user_id, item_id):
    """Predicted rating for one user-item pair (fallback rating for cold start)."""
    service = _get_service()
    try:
        prediction = service.predict(user_id, item_id)
    except NotInitialized:
        return jsonify({'error': 'Service error', 'message': 'Model not available'}), 503

    return jsonify({
        'user_id': user_id,
        'item_id': item_id,
        'prediction': prediction,
        'known': service.model.is_known(user_id, item_id)
    })


@app.route('/metrics', methods=['GET'])
def metrics():
    """Rolling accuracy, loss and learning rate of the online learner."""
    service = _get_service()
    return jsonify({
        **service.get_metrics().to_dict(),
        'cache': service.cache.get_stats()
    })


@app.route('/queue', methods=['GET'])
def queue_status():
    """Update queue length, draining flag and coordinator counters."""
    return jsonify(_get_service().get_queue_status())


@app.route('/', methods=['GET'])
def root():
    """Root endpoint with service information."""
    return jsonify({
        'service': 'Online Recommendation API',
        'version': '2.0',
        'endpoints': {
            'health': {'path': '/health', 'method': 'GET'},
            'feedback': {
                'path': '/feedback',
                'method': 'POST',
                'body': {
                    'user_id': 'Required identifier',
                    'item_id': 'Required identifier',
                    'value': f"Required number in [{config.RATING_CONFIG['min_rating']}, "
                             f"{config.RATING_CONFIG['max_rating']}]",
                    'priority': 'Optional: low, medium or high (default: medium)',
                    'action': 'Optional action name (default: rate)'
                }
            },
            'recommend': {
                'path': '/recommend/<user_id>',
                'method': 'GET',
                'parameters': {'n': 'Optional query parameter (positive integer, 1-100, default: 20)'},
                'example': '/recommend/12345?n=10'
            },
            'predict': {'path': '/predict/<user_id>/<item_id>', 'method': 'GET'},
            'metrics': {'path': '/metrics', 'method': 'GET'},
            'queue': {'path': '/queue', 'method': 'GET'}
        },
        'timestamp': datetime.now().isoformat()
    })


if __name__ == '__main__':
    try:
        initialize_service()
    except Exception as e:
        logger.error(f"Failed to initialize service: {e}")
        raise

    host = config.SERVING_CONFIG['host']
    port = config.SERVING_CONFIG['port']
    debug = config.SERVING_CONFIG['debug']

    logger.info(f"Starting Flask server on {host}:{port}")
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        recommender.shutdown()
