import logging

from flask import Flask, jsonify, render_template_string, request

from errors import DuplicateJob, InvalidJobKind, JobNotFound, NoHandlerRegistered, QueueError
from models import JobState

logger = logging.getLogger(__name__)


HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>QueueCTL Dashboard</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif; margin: 40px; background: #f9f9f9; }
        .container { max-width: 1200px; margin: 0 auto; background: #fff; border: 1px solid #ddd; border-radius: 8px; padding: 20px; }
        h1, h2 { border-bottom: 2px solid #eee; padding-bottom: 10px; }
        .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 20px; }
        .card { background: #fafafa; border: 1px solid #eee; border-radius: 5px; padding: 15px; }
        table { width: 100%; border-collapse: collapse; }
        th, td { text-align: left; padding: 8px; border-bottom: 1px solid #ddd; }
        th { background: #f4f4f4; }
    </style>
</head>
<body>
    <div class="container">
        <h1>QueueCTL Dashboard</h1>

        <div class="grid">
            <div class="card">
                <h2>Job Status</h2>
                <table>
                {% for state, count in summary.items() %}
                    <tr><th>{{ state.upper() }}</th><td>{{ count }}</td></tr>
                {% endfor %}
                </table>
            </div>
            <div class="card">
                <h2>Execution Metrics</h2>
                <table>
                {% for key, value in metrics.items() %}
                    <tr><th>{{ key.replace('_', ' ')|title }}</th><td>{{ value }}</td></tr>
                {% else %}
                    <tr><td>No metrics found.</td></tr>
                {% endfor %}
                </table>
            </div>
        </div>

        <h2>Pending Jobs</h2>
        <div class="card">
            <table>
                <tr><th>ID</th><th>Type</th><th>Priority</th><th>Attempts</th><th>Retry At</th></tr>
                {% for job in pending_jobs %}
                <tr>
                    <td>{{ job.id }}</td>
                    <td>{{ job.type.value }}</td>
                    <td>{{ job.priority }}</td>
                    <td>{{ job.attempts }}</td>
                    <td>{{ job.retry_at or '' }}</td>
                </tr>
                {% else %}
                <tr><td colspan="5">No pending jobs.</td></tr>
                {% endfor %}
            </table>
        </div>

        <h2>Dead Jobs</h2>
        <div class="card">
            <table>
                <tr><th>ID</th><th>Type</th><th>Error</th><th>Attempts</th></tr>
                {% for job in dead_jobs %}
                <tr>
                    <td>{{ job.id }}</td>
                    <td>{{ job.type.value }}</td>
                    <td><code>{{ job.error }}</code></td>
                    <td>{{ job.attempts }}</td>
                </tr>
                {% else %}
                <tr><td colspan="4">No dead jobs.</td></tr>
                {% endfor %}
            </table>
        </div>
    </div>
</body>
</html>
"""


def create_app(service) -> Flask:
    """Builds the dashboard and the JSON API around a queue service."""
    app = Flask(__name__)

    @app.errorhandler(QueueError)
    def queue_error(e):
        if isinstance(e, JobNotFound):
            code = 404
        elif isinstance(e, DuplicateJob):
            code = 409
        elif isinstance(e, (InvalidJobKind, NoHandlerRegistered)):
            code = 400
        else:
            code = 409
        return jsonify(error=type(e).__name__, message=str(e)), code

    @app.route("/")
    def dashboard():
        """Main dashboard page."""
        return render_template_string(
            HTML_TEMPLATE,
            summary=service.summary(),
            metrics=service.metrics(),
            pending_jobs=service.load_pending(),
            dead_jobs=service.list_jobs(JobState.FAILED),
        )

    @app.post("/api/jobs")
    def enqueue_job():
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or "type" not in data or "payload" not in data:
            return jsonify(error="BadRequest", message="Body must be a JSON object with 'type' and 'payload'"), 400
        try:
            priority = int(data.get("priority", 0))
        except (TypeError, ValueError):
            return jsonify(error="BadRequest", message="'priority' must be an integer"), 400

        job_id = service.submit(data["type"], data["payload"], priority=priority, job_id=data.get("id"))
        return jsonify(id=job_id), 201

    @app.get("/api/jobs/<job_id>")
    def get_job(job_id):
        return jsonify(service.get(job_id).to_dict())

    @app.post("/api/jobs/<job_id>/cancel")
    def cancel_job(job_id):
        canceled = service.cancel(job_id)
        return jsonify(id=job_id, canceled=canceled, state=service.status(job_id).value)

    @app.get("/api/status")
    def status():
        return jsonify(summary=service.summary(), metrics=service.metrics())

    return app


def run_dashboard(service, host="127.0.0.1", port=5000):
    """Starts the Flask web server."""
    logger.info("Starting QueueCTL Dashboard at http://%s:%s", host, port)
    create_app(service).run(host=host, port=port)
