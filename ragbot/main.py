# Entry point for the FastAPI app
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

from . import config, security
from .clients.twilio_client import create_twilio_client
from .openai_agent import create_orchestrator
from .utils.message_splitter import split_message

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

RESET_COMMANDS = {"reset", "/reset"}
RESET_CONFIRMATION = "Conversation reset. How can I help you?"


def get_orchestrator(app: FastAPI):
    """Return the app's orchestrator, building it from config on first use."""
    if app.state.orchestrator is None:
        app.state.orchestrator = create_orchestrator()
    return app.state.orchestrator


def get_twilio(app: FastAPI):
    if app.state.twilio is None:
        app.state.twilio = create_twilio_client()
    return app.state.twilio


def _validate_form(form) -> dict:
    """Return {field: [errors]} for the required Twilio fields."""
    errors = {}
    for field in ("From", "Body"):
        value = form.get(field)
        if not isinstance(value, str) or not value.strip():
            errors[field] = [f"{field} field is required"]
    return errors


async def deliver_reply(twilio, to: str, text: str):
    """Send a reply, split into WhatsApp-sized parts, in order.

    Returns the result of the last send, or the first failure.
    """
    result = None
    parts = split_message(text)
    for index, part in enumerate(parts, 1):
        result = await twilio.send_whatsapp_message(to, part)
        if not result.success:
            logger.error(f"[WEBHOOK] Delivery of part {index}/{len(parts)} to {to} failed: {result.error}")
            return result
    return result


def create_app(orchestrator=None, twilio=None) -> FastAPI:
    """Build the webhook app. Collaborators default to config-built clients."""
    app = FastAPI(title="ragbot")
    app.state.orchestrator = orchestrator
    app.state.twilio = twilio

    @app.on_event("startup")
    async def startup_event():
        for problem in config.validate_config():
            logger.warning(f"[STARTUP] Configuration problem: {problem}")
        try:
            await get_orchestrator(app).knowledge_base.warm_up()
        except Exception as e:
            logger.error(f"[STARTUP] Knowledge base warm-up failed: {e}")
        logger.info("[STARTUP] Initialization complete")

    @app.get("/")
    def health():
        return {"ok": True}

    @app.post("/whatsapp")
    async def whatsapp_webhook(request: Request):
        """Twilio WhatsApp webhook: generate a reply and deliver it back."""
        form = await request.form()
        params = {key: value for key, value in form.items() if isinstance(value, str)}

        if config.TWILIO_VALIDATE_SIGNATURE:
            security.validate_twilio_signature(request, params)

        errors = _validate_form(params)
        if errors:
            logger.warning(f"[WEBHOOK] Invalid request body: {errors}")
            return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": errors})

        sender = params["From"]
        body = params["Body"]
        logger.info(f"[WEBHOOK] Received WhatsApp message from {sender}: {body!r}")

        orchestrator = get_orchestrator(app)
        tokens = None
        if body.strip().lower() in RESET_COMMANDS:
            orchestrator.reset_conversation(sender)
            reply_text = RESET_CONFIRMATION
        else:
            try:
                result = await orchestrator.generate_reply(sender, body)
            except Exception as e:
                logger.exception(f"[WEBHOOK] Failed to generate reply for {sender}: {e}")
                return JSONResponse(status_code=500, content={"error": "Failed to generate reply"})
            reply_text = result.response
            tokens = result.tokens

        sent = await deliver_reply(get_twilio(app), sender, reply_text)
        if not sent.success:
            return JSONResponse(status_code=500, content={"error": "Failed to send message", "details": sent.error})

        return {"success": True, "messageSid": sent.message_sid, "tokens": tokens}

    @app.get("/conversations")
    def list_conversations():
        return {"conversationIds": get_orchestrator(app).history.conversation_ids()}

    @app.post("/conversations/{conversation_id}/reset")
    def reset_conversation(conversation_id: str):
        get_orchestrator(app).reset_conversation(conversation_id)
        return {"success": True}

    @app.get("/conversations/{conversation_id}")
    def conversation_history(conversation_id: str):
        messages = get_orchestrator(app).get_conversation_history(conversation_id)
        return {"conversationId": conversation_id, "messages": messages}

    return app


app = create_app()
