"""
pos_service/main.py - Spa POS Checkout Service

PURPOSE:
    HTTP surface and event wiring for the POS terminals of every branch.
    Holds terminal carts in Redis, records transactions in PostgreSQL, settles
    cash immediately and M-Pesa asynchronously through Kafka.

API ENDPOINTS:
    GET    /catalog/services?branch_id=1[&category=massage][&search=deep]
    GET    /catalog/products?branch_id=1
    GET    /catalog/categories
    GET    /staff?branch_id=1
    POST   /terminals/{terminal_id}/session              - Open or resume a till session
    GET    /terminals/{terminal_id}                      - Cart, totals and checkout state
    POST   /terminals/{terminal_id}/cart/items           - Add service/product
    PUT    /terminals/{terminal_id}/cart/items/{line_id} - Update quantity (0 removes)
    DELETE /terminals/{terminal_id}/cart/items/{line_id} - Remove line
    PUT    /terminals/{terminal_id}/cart/items/{line_id}/staff
    DELETE /terminals/{terminal_id}/cart                 - Clear cart
    PUT    /terminals/{terminal_id}/adjustments          - Discount / tip
    PUT    /terminals/{terminal_id}/staff                - Select staff member
    PUT    /terminals/{terminal_id}/payment-method       - cash | mpesa
    PUT    /terminals/{terminal_id}/customer             - Registered client or walk-in
    POST   /terminals/{terminal_id}/checkout             - Submit the cart
    GET    /transactions/{transaction_id}
    GET    /reports/daily-summary?branch_id=1[&business_date=2026-10-19]
    GET    /health

KAFKA EVENTS:
    CONSUMED:
        - payment.succeeded, payment.failed (from the M-Pesa gateway)
    PUBLISHED:
        - cart.item_added, cart.item_removed
        - checkout.submitted, transaction.completed
        - payment.charge_requested
        - notification.send, receipt.print_requested

BACKGROUND THREADS:
    - Payment consumer: applies gateway outcomes to transactions and tills
    - Payment expiry: fails M-Pesa transactions left PROCESSING longer than
      PAYMENT_TIMEOUT_SECONDS so the till is released

TESTING COMMANDS:
    1. Open a till at branch 1:
        curl -X POST http://localhost:8010/terminals/till-01/session \
          -H "Content-Type: application/json" -d '{"branch_id": 1}'

    2. Add a Swedish Massage and select a therapist:
        curl -X POST http://localhost:8010/terminals/till-01/cart/items \
          -H "Content-Type: application/json" -d '{"item_kind": "service", "item_id": 1}'
        curl -X PUT http://localhost:8010/terminals/till-01/staff \
          -H "Content-Type: application/json" -d '{"staff_id": 1}'

    3. Pay by M-Pesa:
        curl -X PUT http://localhost:8010/terminals/till-01/customer \
          -H "Content-Type: application/json" -d '{"name": "Jane", "phone": "0712345678"}'
        curl -X PUT http://localhost:8010/terminals/till-01/payment-method \
          -H "Content-Type: application/json" -d '{"payment_method": "mpesa"}'
        curl -X POST http://localhost:8010/terminals/till-01/checkout

USAGE:
    python -m services.pos_service.main
"""

import logging
import threading
from contextlib import asynccontextmanager
from datetime import timedelta
from zoneinfo import ZoneInfo

import redis
from fastapi import FastAPI

from services.pos_service import routes
from services.pos_service.cart_repository import SessionRepository
from services.pos_service.checkout import CheckoutEngine
from services.pos_service.gateway import MobileMoneyGateway
from services.pos_service.models import Base
from services.pos_service.notifications import TerminalNotifier
from services.pos_service.payment_events import PAYMENT_TOPICS, PaymentEventHandler
from services.pos_service.schemas import HealthResponse
from services.pos_service.settings import Settings
from shared.database import create_db_engine, create_session_factory, session_scope
from shared.kafka_client import BaseKafkaConsumer, BaseKafkaProducer
from shared.logging_config import setup_logging
from shared.topic_initializer import create_topics

settings = Settings()

setup_logging("pos-service", level=settings.log_level, timezone=settings.business_timezone)
logger = logging.getLogger(__name__)

engine = create_db_engine(settings.database_url)
SessionLocal = create_session_factory(engine)

# Global instances
redis_client: redis.Redis = None
producer: BaseKafkaProducer = None
payment_consumer: BaseKafkaConsumer = None
stop_workers = threading.Event()


def init_db():
    """Initialize database tables."""
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")


def payment_expiry_worker(
    checkout_engine: CheckoutEngine,
    timeout_seconds: int,
    poll_interval_seconds: int,
    stop_event: threading.Event,
) -> None:
    """
    Background worker that fails M-Pesa payments the gateway never answered.

    Args:
        checkout_engine: Engine that owns the failure path
        timeout_seconds: Age after which a PROCESSING transaction is expired
        poll_interval_seconds: How often to look for stale transactions
        stop_event: Set on shutdown
    """
    logger.info(f"Payment expiry job started (poll every {poll_interval_seconds}s, timeout {timeout_seconds}s)")

    while not stop_event.is_set():
        try:
            checkout_engine.expire_stale_transactions(timedelta(seconds=timeout_seconds))
        except Exception as e:
            logger.error(f"Error in payment expiry job: {e}")

        stop_event.wait(poll_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    global redis_client, producer, payment_consumer

    logger.info("Starting POS Service...")

    # Initialize database
    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    if settings.seed_demo_data:
        try:
            from services.pos_service.seed_data import seed_catalog

            with session_scope(SessionLocal) as db:
                seed_catalog(db)
        except Exception as e:
            logger.error(f"Failed to seed catalog: {e}")

    # Initialize Kafka topics
    try:
        create_topics(settings.kafka_bootstrap_servers)
        logger.info("Kafka topics initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Kafka topics: {e}")
        raise

    # Initialize Redis
    try:
        redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            decode_responses=True,
        )
        redis_client.ping()
        logger.info("Redis connected")
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise

    # Initialize Kafka producer
    try:
        producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="pos-producer")
        logger.info("Kafka producer initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Kafka producer: {e}")
        raise

    sessions = SessionRepository(redis_client)
    checkout_engine = CheckoutEngine(
        SessionLocal,
        MobileMoneyGateway(producer, account_reference=settings.mpesa_account_reference),
        TerminalNotifier(producer),
        sessions=sessions,
        producer=producer,
        business_timezone=ZoneInfo(settings.business_timezone),
    )
    routes.checkout_engine = checkout_engine
    routes.session_repository = sessions
    routes.session_factory = SessionLocal

    # Start consumer thread for gateway outcomes
    payment_consumer = BaseKafkaConsumer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id="pos-service-group",
        topics=PAYMENT_TOPICS,
        producer=producer,
    )
    handler = PaymentEventHandler(checkout_engine, SessionLocal)

    def consume_payment_events():
        try:
            payment_consumer.consume(handler.handle)
        except Exception as e:
            logger.error(f"Error in payment consumer: {e}")

    threading.Thread(target=consume_payment_events, daemon=True).start()
    logger.info("Payment consumer thread started")

    threading.Thread(
        target=payment_expiry_worker,
        args=(checkout_engine, settings.payment_timeout_seconds, settings.expiry_poll_interval_seconds, stop_workers),
        daemon=True,
    ).start()
    logger.info("Payment expiry thread started")

    yield

    logger.info("Shutting down POS Service...")
    stop_workers.set()
    if payment_consumer:
        payment_consumer.stop()
    if redis_client:
        redis_client.close()
    if producer:
        producer.close()


app = FastAPI(title="Spa POS Service", version="1.0.0", lifespan=lifespan)
app.include_router(routes.router)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", service="pos-service", version="1.0.0")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.pos_service_port)
