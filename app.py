from flask import Flask, jsonify

from config import Config
from logging_config import logger
from cache import get_embedding_cache
from db import is_postgres, ping
from routes import agent_bp
from agent_engine.scheduler import AgentScheduler

app = Flask(__name__)
app.secret_key = Config.FLASK_SECRET_KEY
app.register_blueprint(agent_bp)


@app.errorhandler(400)
def bad_request(e):
    return jsonify({'error': 'Bad request'}), 400


@app.errorhandler(404)
def not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(500)
def internal_error(e):
    logger.error(f"Unhandled error: {e}")
    return jsonify({'error': 'Internal server error'}), 500


@app.route('/health')
def health():
    db_ok = ping()
    status = 'ok' if db_ok else 'degraded'
    return jsonify({
        'status': status,
        'database': {'backend': 'postgresql' if is_postgres() else 'sqlite',
                     'status': 'ok' if db_ok else 'error'},
        'vector_backend': Config.VECTOR_BACKEND,
        'embedding_cache': get_embedding_cache().stats(),
    }), 200 if db_ok else 503


if Config.SCHEDULER_ENABLED:
    AgentScheduler.start()


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=Config.PORT, debug=Config.DEBUG)
