import base64
import binascii
import logging

from flask import Flask, request, jsonify
from redis.exceptions import RedisError

from config.settings import LOG_LEVEL, QUEUE_NAME
from api import enqueue_request
from lib.document_records import DocumentRecords
from lib.redis import JobQueue, redis
from type_defs.errors import MetadataStoreError, ValidationError

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("server")


def create_app(queue: JobQueue | None = None, records: DocumentRecords | None = None) -> Flask:
    app = Flask(__name__)
    queue = queue or JobQueue(redis, QUEUE_NAME)
    records = records or DocumentRecords()

    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    @app.route("/healthcheck", methods=["GET"])
    def healthcheck_endpoint():
        return jsonify(), 200

    @app.route("/documents", methods=["POST"])
    def documents_endpoint():
        """
        Queues a pdf for tiling.

        This endpoint receives a JSON payload containing the base64 encoded
        pdf, project ID, document ID and file name. The request is validated
        and a processing job is added to the queue.

        Returns
        -------
        flask.Response
            A JSON response with status code 202 if the document is queued,
            or 400 if any required fields are missing or invalid.
        """

        data = request.get_json(silent=True) or {}

        for field in ("document_bytes", "project_id", "document_id", "file_name"):
            if field not in data:
                return jsonify({"error": f"Missing '{field}' in request body"}), 400

        document_bytes = data.get("document_bytes")
        project_id = data.get("project_id")
        document_id = data.get("document_id")
        file_name = data.get("file_name")
        correlation_id = data.get("correlation_id")

        if not isinstance(document_bytes, str):
            return jsonify({"error": "'document_bytes' must be a base64 string"}), 400
        if not isinstance(project_id, str) and not isinstance(project_id, int):
            return jsonify({"error": "'project_id' must be a string"}), 400
        if not isinstance(document_id, str) and not isinstance(document_id, int):
            return jsonify({"error": "'document_id' must be a string"}), 400
        if not isinstance(file_name, str) or not file_name:
            return jsonify({"error": "'file_name' must be a string"}), 400
        if correlation_id is not None and not isinstance(correlation_id, str):
            return jsonify({"error": "'correlation_id' must be a string"}), 400

        try:
            pdf = base64.b64decode(document_bytes, validate=True)
        except (binascii.Error, ValueError):
            return jsonify({"error": "'document_bytes' must be a base64 string"}), 400

        try:
            job, correlation_id = enqueue_request(
                queue,
                records,
                pdf,
                str(project_id),
                str(document_id),
                file_name,
                correlation_id,
            )
        except ValidationError as e:
            return jsonify({"error": str(e)}), 400
        except (MetadataStoreError, RedisError) as e:
            logger.error("could not queue document %s: %s", document_id, e)
            return jsonify({"error": "Document could not be queued"}), 503

        return (
            jsonify(
                {
                    "message": "Processing queued",
                    "document_id": str(document_id),
                    "job_id": job.id,
                    "correlation_id": correlation_id,
                    "status": "queued",
                }
            ),
            202,
        )

    @app.route("/documents/<document_id>/status", methods=["GET"])
    def document_status_endpoint(document_id: str):
        try:
            status = records.status_of(document_id)
        except MetadataStoreError as e:
            logger.error("could not read status of document %s: %s", document_id, e)
            return jsonify({"error": "Status unavailable"}), 503

        if status is None:
            return jsonify({"error": f"Document {document_id} not found"}), 404

        return jsonify(status), 200

    @app.route("/jobs/<job_id>", methods=["GET"])
    def job_endpoint(job_id: str):
        job = queue.get_job(job_id)
        if job is None:
            return jsonify({"error": f"Job {job_id} not found"}), 404

        data = {k: v for k, v in job.data.items() if k != "document_bytes"}

        return (
            jsonify(
                {
                    "id": job.id,
                    "state": job.state,
                    "progress": job.progress,
                    "failed_reason": job.failed_reason,
                    "attempts_made": job.attempts_made,
                    "data": data,
                }
            ),
            200,
        )

    @app.route("/documents/<document_id>", methods=["DELETE"])
    def delete_document_endpoint(document_id: str):
        """
        Cancels queued runs of the document and deletes its record. A run
        that already started is not interrupted.
        """

        jobs = queue.remove_by_document(document_id)

        try:
            records.delete(document_id)
        except MetadataStoreError as e:
            logger.error("could not delete document %s: %s", document_id, e)
            return jsonify({"error": "Document could not be deleted", **jobs}), 503

        if jobs["active"]:
            logger.warning("document %s deleted while jobs %s are running", document_id, jobs["active"])

        return jsonify({"message": "Document deleted", **jobs}), 200

    return app


if __name__ == "__main__":
    logger.info("Starting server...")
    create_app().run(host="0.0.0.0", port=8000, threaded=True, use_reloader=False)
