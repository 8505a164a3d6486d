import asyncio
from datetime import datetime, timezone

from flask import Flask, request, jsonify
from flask_cors import CORS

from analyze.base import ErrorType
from config.default import Config
from orchestration.cache_warming import CacheWarmer
from orchestration.orchestrator import AnalysisOrchestrator
from orchestration.service_factory import build_orchestrator
from utils.logger import setup_logger
from utils.serialization import to_jsonable

VERSION = '1.0.0'

# Setup logging
logger = setup_logger('app')


def error_response(message, status, **extra):
    return jsonify({'status': 'error', 'error': message, **extra}), status


def create_app(orchestrator: AnalysisOrchestrator = None) -> Flask:
    """Build the Flask app around an orchestrator (constructed from Config when not given)."""
    app = Flask(__name__)
    CORS(app)

    if orchestrator is None:
        orchestrator = build_orchestrator()
    app.extensions['orchestrator'] = orchestrator

    @app.route('/api/analyze', methods=['POST'])
    def analyze_url():
        """Endpoint for URL analysis"""
        data = request.get_json(silent=True)
        if not data or not data.get('url'):
            return error_response('No URL provided', 400)

        try:
            result = asyncio.run(orchestrator.analyze_url(
                data['url'],
                force_refresh=bool(data.get('force_refresh', False)),
                experiment_id=data.get('experiment_id'),
                user_id=data.get('user_id'),
            ))
        except Exception as e:
            logger.error(f"Analysis error: {str(e)}")
            return error_response(str(e), 500)

        if result.error and result.error.type == ErrorType.VALIDATION:
            return error_response(result.error.message, 400, error_type=result.error.code)

        return jsonify({'status': 'success', 'data': to_jsonable(result)})

    @app.route('/api/health', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'components': {
                'cache': orchestrator.cache.backend.name,
                'services': sorted(orchestrator.services),
                'ai_enabled': Config.AI_ENABLED,
            },
            'version': VERSION
        })

    @app.route('/api/statistics', methods=['GET'])
    def statistics():
        stats = orchestrator.get_statistics()
        stats['cache'] = orchestrator.cache_stats()
        return jsonify({'status': 'success', 'data': to_jsonable(stats)})

    @app.route('/api/cache/invalidate', methods=['POST'])
    def invalidate_cache():
        data = request.get_json(silent=True) or {}
        pattern = data.get('pattern')
        if not pattern:
            return error_response('No pattern provided', 400)
        removed = orchestrator.invalidate_cache(pattern, include_services=bool(data.get('include_services')))
        return jsonify({'status': 'success', 'data': {'removed': removed}})

    @app.route('/api/cache/clear', methods=['POST'])
    def clear_cache():
        removed = orchestrator.clear_cache()
        return jsonify({'status': 'success', 'data': {'removed': removed}})

    @app.route('/api/cache/warm', methods=['POST'])
    def warm_cache():
        data = request.get_json(silent=True) or {}
        urls = data.get('urls')
        if not isinstance(urls, list) or not urls or not all(isinstance(url, str) for url in urls):
            return error_response('urls must be a non-empty list of strings', 400)
        try:
            report = asyncio.run(orchestrator.warm_cache(urls))
        except Exception as e:
            logger.error(f"Cache warming error: {str(e)}")
            return error_response(str(e), 500)
        return jsonify({'status': 'success', 'data': report})

    @app.route('/api/config/scoring', methods=['GET'])
    def get_scoring_config():
        manager = orchestrator.calculator.config_manager
        return jsonify({'status': 'success', 'data': to_jsonable({
            'config': manager.config,
            'history': manager.get_history(),
        })})

    @app.route('/api/config/scoring', methods=['PUT'])
    def update_scoring_config():
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return error_response('No configuration provided', 400)
        reason = data.pop('reason', 'updated via API')
        report = orchestrator.update_scoring_config(data, reason)
        if not report.is_valid:
            return error_response('Invalid scoring configuration', 400, errors=report.errors)
        return jsonify({'status': 'success', 'data': to_jsonable({
            'config': orchestrator.calculator.config,
            'warnings': report.warnings,
        })})

    return app


if __name__ == '__main__':
    app = create_app()
    CacheWarmer(app.extensions['orchestrator']).start()
    app.run(host='0.0.0.0', port=8000, debug=True)
