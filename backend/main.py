"""Main entry point for the ChatFlow conversational agent API."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import FastAPI, HTTPException, status

from config import PORT, LOG_LEVEL, LOG_FORMAT, MOOD_ANALYSIS
from logger import setup_logging
from models.api import InboundMessageRequest, SubmitResponse, ClearResponse
from services.channel import WebhookChannel
from services.content_assembler import ContentAssembler
from services.conversation_store import ConversationStore, StorageIOError
from services.llm_client import LLMClient
from services.message_dispatcher import MessageDispatcher
from services.performance_monitor import PerformanceMonitor
from services.persona import PersonaProvider, MoodAnalyzer
from services.rate_limiter import RateLimiter

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="ChatFlow",
    description="Conversational agent core: per-sender dispatch, Groq replies, durable history",
    version="2.0.0"
)

# Initialize services (will be done on startup)
conversation_store: ConversationStore = None
llm_client: LLMClient = None
channel: WebhookChannel = None
dispatcher: MessageDispatcher = None


@app.on_event("startup")
async def startup_event():
    """Build every service and wire them together."""
    global conversation_store, llm_client, channel, dispatcher

    logger.info("Initializing ChatFlow services...")

    try:
        conversation_store = ConversationStore()
        await conversation_store.initialize()
        logger.info("Initialized ConversationStore")

        llm_client = LLMClient()
        logger.info("Initialized LLMClient")

        channel = WebhookChannel()
        logger.info("Initialized WebhookChannel")

        persona = PersonaProvider(conversation_store)
        analyzers = [MoodAnalyzer(llm_client, conversation_store)] if MOOD_ANALYSIS else []

        dispatcher = MessageDispatcher(
            store=conversation_store,
            llm_client=llm_client,
            channel=channel,
            rate_limiter=RateLimiter(),
            assembler=ContentAssembler(persona.name),
            context_providers=[persona.persona_prompt, persona.time_context, persona.mood_summary],
            analyzers=analyzers,
            monitor=PerformanceMonitor(),
            persona_name=persona.name
        )
        dispatcher.bind_loop(asyncio.get_running_loop())
        logger.info("Initialized MessageDispatcher")

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Drain the dispatcher, write the store and close the channel."""
    logger.info("Shutting down ChatFlow services...")
    if dispatcher is not None:
        await dispatcher.cleanup()
    elif conversation_store is not None:
        try:
            await conversation_store.close()
        except StorageIOError as e:
            logger.error(f"Final chat history save failed: {e}")
    if channel is not None:
        await channel.aclose()


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "ChatFlow API"}


@app.get("/health")
async def health(deep: bool = False):
    """
    Detailed health check.

    Checks configuration and storage; with `deep=true` also asks the model
    for a canned reply.
    """
    checks: Dict[str, Dict[str, Any]] = {}

    if llm_client is None:
        checks["groq_api"] = {"status": "critical", "message": "LLM client not initialized"}
    else:
        checks["groq_api"] = {
            "status": "healthy",
            "message": f"Groq configured with {len(llm_client.slots)} key(s)",
        }
        if deep:
            result = await llm_client.health_check()
            if not result["healthy"]:
                checks["groq_api"] = {
                    "status": "critical",
                    "message": result.get("error", "Unexpected health check reply"),
                }

    if conversation_store is None or not conversation_store.is_initialized:
        checks["storage"] = {"status": "critical", "message": "Conversation store not initialized"}
    elif conversation_store.is_dirty:
        checks["storage"] = {"status": "warning", "message": "Unsaved changes pending"}
    else:
        checks["storage"] = {"status": "healthy", "message": f"{len(conversation_store)} conversations"}

    statuses = {check["status"] for check in checks.values()}
    overall = "critical" if "critical" in statuses else "warning" if "warning" in statuses else "healthy"

    return {
        "status": overall,
        "service": "chatflow",
        "version": "2.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/status")
async def get_status():
    """Dispatcher, store, backend and performance counters."""
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return dispatcher.get_status()


@app.post("/messages", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def receive_message(request: InboundMessageRequest) -> SubmitResponse:
    """
    Accept a normalized inbound message from the channel transport.

    The message is queued for its sender and answered asynchronously.
    """
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Service not initialized")

    try:
        dispatcher.submit(request.to_message())
    except RuntimeError as e:
        logger.warning(f"Rejected message from {request.sender}: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return SubmitResponse(status="queued", sender=request.sender, message_id=request.id)


@app.get("/conversations/{sender}/stats")
async def conversation_stats(sender: str):
    """Turn counts and average response time for one conversation."""
    if conversation_store is None:
        raise HTTPException(status_code=503, detail="Service not initialized")

    stats = conversation_store.get_conversation_stats(sender)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No conversation for {sender}")
    return stats


@app.delete("/conversations/{sender}", response_model=ClearResponse)
async def clear_conversation(sender: str) -> ClearResponse:
    """Delete a sender's history."""
    if conversation_store is None:
        raise HTTPException(status_code=503, detail="Service not initialized")

    try:
        cleared = await conversation_store.clear(sender)
    except StorageIOError as e:
        logger.error(f"Failed to persist cleared conversation for {sender}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save chat history")
    return ClearResponse(sender=sender, cleared=cleared)


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting ChatFlow API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
