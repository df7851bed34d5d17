"""Main Quart application for the knowledge-base chat service."""
from typing import Any, Dict, List, Optional
from quart import Blueprint, Quart, current_app, jsonify, request
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator
import structlog

from kbchat import __version__, config
from kbchat.errors import (
    CompletionProviderError,
    ConfigurationError,
    EmbeddingProviderError,
    ExtractionError,
    KBChatError,
)
from kbchat.log import configure_logging
from kbchat.rag.blobs import BlobReference, DirectUrl, validate_upload
from kbchat.services import Services, build_services

logger = structlog.get_logger()

api = Blueprint("api", __name__)

SERVICES_KEY = "KBCHAT_SERVICES"


class HistoryMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    question: str = Field(validation_alias=AliasChoices("question", "message"))
    conversation_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("conversation_id", "conversationId")
    )
    history: List[HistoryMessage] = Field(default_factory=list)


class IngestRequest(BaseModel):
    title: str = Field(validation_alias=AliasChoices("title", "document_title", "documentTitle"))
    source_type: str = Field(
        default="document", validation_alias=AliasChoices("source_type", "sourceType")
    )
    text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("text", "content", "document_text")
    )
    file_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("file_path", "filePath")
    )
    file_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("file_url", "fileUrl")
    )
    replace: bool = False

    @model_validator(mode="after")
    def check_source(self) -> "IngestRequest":
        sources = [s for s in (self.text, self.file_path, self.file_url) if s]
        if len(sources) != 1:
            raise ValueError("Provide exactly one of text, file_path or file_url")
        return self


class DeleteRequest(BaseModel):
    title: Optional[str] = None
    source_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source_type", "sourceType")
    )
    reference: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "reference", "file_url", "fileUrl", "storage_path", "storagePath"
        ),
    )

    @model_validator(mode="after")
    def check_target(self) -> "DeleteRequest":
        if not self.reference and not (self.title and self.source_type):
            raise ValueError("Provide title and source_type, or a file reference")
        return self


class CreateConversationRequest(BaseModel):
    customer_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("customer_id", "customerId")
    )
    channel: Optional[str] = None
    subject: Optional[str] = None


class UpdateConversationRequest(BaseModel):
    status: str


def error_status(error: KBChatError) -> int:
    """HTTP status for a service error."""
    if isinstance(error, ExtractionError):
        return 400
    if isinstance(error, ConfigurationError):
        return 503
    if isinstance(error, (EmbeddingProviderError, CompletionProviderError)):
        return 502
    return 500


def get_services() -> Services:
    """Services of the running app, built on first use."""
    services = current_app.config.get(SERVICES_KEY)
    if services is None:
        services = build_services()
        current_app.config[SERVICES_KEY] = services
    return services


async def _json_body() -> Dict[str, Any]:
    data = await request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@api.route("/api/knowledge/upload", methods=["POST"])
async def upload_document():
    """Store an uploaded file in the knowledge-base bucket.

    Expects multipart form data with a 'file' field.

    Returns JSON:
    {
        "url": "public URL of the blob",
        "path": "documents/<timestamp>-<name>"
    }
    """
    files = await request.files
    upload = files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"error": "No file provided"}), 400

    data = upload.read()
    validate_upload(upload.filename, len(data))

    storage = get_services().blob_storage
    path = storage.new_upload_path(upload.filename)
    url = storage.upload(path, data)

    logger.info("document_uploaded", path=path, size=len(data))
    return jsonify({"url": url, "path": path}), 201


@api.route("/api/knowledge/ingest", methods=["POST"])
async def ingest_document():
    """Chunk, embed and store a document.

    Expects JSON body with a title, a source type and exactly one of
    'text', 'file_path' (bucket path) or 'file_url'.

    Returns JSON:
    {
        "success": true,
        "chunks": 12,
        "message": "12 chunks processed successfully."
    }
    """
    body = IngestRequest.model_validate(await _json_body())
    pipeline = get_services().pipeline

    if body.text:
        result = await pipeline.ingest_text(
            body.title, body.source_type, body.text, replace=body.replace
        )
    else:
        source = BlobReference(body.file_path) if body.file_path else DirectUrl(body.file_url)
        result = await pipeline.ingest_source(
            body.title, body.source_type, source, replace=body.replace
        )

    return jsonify(result.to_dict())


@api.route("/api/knowledge", methods=["GET"])
async def list_documents():
    """List the knowledge base, one entry per document."""
    documents = get_services().documents.list_documents()
    return jsonify({"documents": [doc.to_dict() for doc in documents]})


@api.route("/api/knowledge", methods=["DELETE"])
async def delete_document():
    """Delete a document by (title, source_type) or by file reference.

    Returns:
        200 with {success, chunksDeleted, blobDeleted}
        404 if nothing matched
    """
    body = DeleteRequest.model_validate(await _json_body())
    documents = get_services().documents

    if body.reference:
        result = documents.delete_by_blob(body.reference)
        found = result.chunks_deleted > 0 or result.blob_deleted
    else:
        result = documents.delete_document(body.title, body.source_type)
        found = result.chunks_deleted > 0

    if not found:
        return jsonify({"error": "Document not found"}), 404
    return jsonify(result.to_dict())


@api.route("/api/chat", methods=["POST"])
async def chat():
    """Answer a question from the knowledge base.

    Expects JSON body:
    {
        "question": "user question",
        "conversation_id": "optional conversation id",
        "history": [{"role": "user", "content": "..."}]  // used without a conversation
    }

    Returns JSON:
    {
        "answer": "assistant answer",
        "chunksUsed": 3,
        "hasContext": true
    }
    or {"error": "..."} with a non-200 status.
    """
    body = ChatRequest.model_validate(await _json_body())
    question = body.question.strip()

    if not question:
        return jsonify({"error": "Question cannot be empty"}), 400
    if len(question) > config.MAX_QUESTION_LENGTH:
        return jsonify({
            "error": f"Question too long (max {config.MAX_QUESTION_LENGTH} characters)"
        }), 400

    services = get_services()
    if body.conversation_id and services.conversations.get_conversation(body.conversation_id) is None:
        return jsonify({"error": "Conversation not found"}), 404

    result = await services.orchestrator.handle_turn(
        question,
        conversation_id=body.conversation_id,
        history=[message.model_dump() for message in body.history],
    )

    if not result.ok:
        return jsonify(result.to_dict()), error_status(result.exception)

    response_data = result.to_dict()
    if result.conversation_id:
        response_data["conversationId"] = result.conversation_id
    return jsonify(response_data)


@api.route("/api/conversations", methods=["POST"])
async def create_conversation():
    """Open a new conversation."""
    body = CreateConversationRequest.model_validate(await _json_body())
    conversation = get_services().conversations.create_conversation(
        customer_id=body.customer_id, channel=body.channel, subject=body.subject
    )
    return jsonify(conversation), 201


@api.route("/api/conversations", methods=["GET"])
async def list_conversations():
    """List conversations, most recently updated first."""
    limit = request.args.get("limit", default=50, type=int)
    conversations = get_services().conversations.list_conversations(limit)
    return jsonify({"conversations": conversations})


@api.route("/api/conversations/<conversation_id>/messages", methods=["GET"])
async def get_conversation_messages(conversation_id: str):
    """Get all messages of a conversation."""
    conversations = get_services().conversations
    if conversations.get_conversation(conversation_id) is None:
        return jsonify({"error": "Conversation not found"}), 404
    return jsonify({"messages": conversations.get_messages(conversation_id)})


@api.route("/api/conversations/<conversation_id>", methods=["PATCH"])
async def update_conversation(conversation_id: str):
    """Change a conversation's status (active, waiting_human, closed)."""
    body = UpdateConversationRequest.model_validate(await _json_body())
    conversation = get_services().conversations.set_status(conversation_id, body.status)
    if conversation is None:
        return jsonify({"error": "Conversation not found"}), 404
    return jsonify(conversation)


@api.route("/health/ready")
async def health_ready():
    """Readiness probe - check if app can serve requests.

    Checks:
    - Provider settings are usable
    - Knowledge store is reachable
    """
    checks = {
        "status": "healthy",
        "provider": False,
        "store": False,
    }

    try:
        services = get_services()
        checks["provider"] = True
        checks["index"] = services.store.get_stats()
        checks["store"] = True
        return jsonify(checks), 200

    except KBChatError as e:
        logger.error("health_check_failed", error=str(e), error_type=type(e).__name__)
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503


@api.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive", "version": __version__}), 200


async def handle_service_error(error: KBChatError):
    status = error_status(error)
    log = logger.error if status >= 500 else logger.warning
    log(
        "request_failed",
        path=request.path,
        error=str(error),
        error_type=type(error).__name__,
        chunk_index=error.chunk_index,
        retryable=error.retryable,
    )
    return jsonify(error.to_dict()), status


async def handle_validation_error(error: ValidationError):
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Invalid request")
    return jsonify({"error": f"{field}: {message}" if field else message}), 400


async def handle_value_error(error: ValueError):
    return jsonify({"error": str(error)}), 400


async def not_found(error):
    """Handle 404 errors."""
    return jsonify({"error": "Not found"}), 404


async def internal_error(error):
    """Handle 500 errors."""
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


def create_app(services: Optional[Services] = None) -> Quart:
    """Build the Quart application.

    Args:
        services: Prebuilt services (built from the environment on first use if not provided)
    """
    configure_logging()

    application = Quart(__name__)
    application.config[SERVICES_KEY] = services
    application.config["MAX_CONTENT_LENGTH"] = (config.MAX_UPLOAD_MB + 1) * 1024 * 1024

    application.register_blueprint(api)

    # ValidationError subclasses ValueError; the more specific handler wins
    application.register_error_handler(KBChatError, handle_service_error)
    application.register_error_handler(ValidationError, handle_validation_error)
    application.register_error_handler(ValueError, handle_value_error)
    application.register_error_handler(404, not_found)
    application.register_error_handler(500, internal_error)

    return application


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn kbchat.main:app in production
    app.run(host="0.0.0.0", port=5000, debug=True)
