from flask import Blueprint, current_app, jsonify

from blueprints.api_routes.games import register_game_api_routes


def create_api_blueprint(*, services, party_quiz_service):
    bp = Blueprint("api", __name__)

    @bp.route("/api/test-connection", endpoint="api_test_connection")
    def api_test_connection():
        result = party_quiz_service.check_connection()
        if not result["database"]:
            current_app.logger.warning("Connection check failed: database unavailable.")
            return jsonify(result), 503
        return jsonify(result)

    @bp.route("/api/ops/metrics", endpoint="api_ops_metrics")
    def api_ops_metrics():
        return jsonify(metrics=services.get_runtime_metrics())

    register_game_api_routes(bp, {"party_quiz_service": party_quiz_service})

    return bp
