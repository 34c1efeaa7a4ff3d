"""
mpesa_gateway/main.py - M-Pesa STK Push Gateway

PURPOSE:
    Settles mobile-money charges for the POS service. Receives charge requests
    over Kafka, sends (or simulates) an STK push to the customer's phone and
    reports the outcome back as payment.succeeded / payment.failed.

MODES:
    simulate (default): the STK result is decided locally after
        STK_DELAY_SECONDS (80% approved; declines are insufficient balance,
        cancelled by user or timeout)
    callback: results only arrive through POST /mpesa/callback

API ENDPOINTS:
    POST /mpesa/callback                          - Daraja STK callback
    GET  /mpesa/transactions/{pos_transaction_id} - STK push record
    GET  /health                                  - Health check

KAFKA EVENTS:
    CONSUMED:
        - payment.charge_requested
    PUBLISHED:
        - payment.succeeded (external_payment_ref = M-Pesa receipt number)
        - payment.failed (error_detail = Daraja ResultDesc)

USAGE:
    python -m services.mpesa_gateway.main
"""

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, status
from pydantic_settings import BaseSettings

from services.mpesa_gateway.handlers import ChargeRequestHandler, StkOutcomeHandler
from services.mpesa_gateway.models import Base
from services.mpesa_gateway.repository import MpesaRepository
from services.mpesa_gateway.stk_push import StkPushSimulator, parse_stk_callback
from shared.database import build_database_url, create_db_engine, create_session_factory, session_scope
from shared.kafka_client import BaseKafkaConsumer, BaseKafkaProducer
from shared.logging_config import setup_logging
from shared.topic_initializer import create_topics


class Settings(BaseSettings):
    """Application settings."""

    kafka_bootstrap_servers: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    postgres_user: str = os.getenv("POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "postgres")
    postgres_host: str = os.getenv("POSTGRES_HOST", "localhost")
    postgres_port: str = os.getenv("POSTGRES_PORT", "5432")
    postgres_db: str = os.getenv("POSTGRES_DB", "spa_pos")
    mpesa_gateway_port: int = int(os.getenv("MPESA_GATEWAY_PORT", "8011"))
    mpesa_mode: str = os.getenv("MPESA_MODE", "simulate")
    stk_delay_seconds: float = float(os.getenv("STK_DELAY_SECONDS", "5"))
    stk_success_rate: float = float(os.getenv("STK_SUCCESS_RATE", "0.8"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()

setup_logging("mpesa-gateway", level=settings.log_level)
logger = logging.getLogger(__name__)

engine = create_db_engine(
    build_database_url(
        settings.postgres_user,
        settings.postgres_password,
        settings.postgres_host,
        settings.postgres_port,
        settings.postgres_db,
    )
)
SessionLocal = create_session_factory(engine)

# Global instances
producer: BaseKafkaProducer = None
charge_consumer: BaseKafkaConsumer = None
outcome_handler: StkOutcomeHandler = None


def init_db():
    """Initialize database tables."""
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    global producer, charge_consumer, outcome_handler

    logger.info(f"Starting M-Pesa Gateway in {settings.mpesa_mode} mode...")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    try:
        create_topics(settings.kafka_bootstrap_servers)
        logger.info("Kafka topics initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Kafka topics: {e}")
        raise

    try:
        producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="mpesa-producer")
        logger.info("Kafka producer initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Kafka producer: {e}")
        raise

    simulator = StkPushSimulator(success_rate=settings.stk_success_rate)
    charge_handler = ChargeRequestHandler(SessionLocal, simulator)
    outcome_handler = StkOutcomeHandler(SessionLocal, producer)

    def resolve_later(checkout_request_id: str):
        try:
            outcome_handler.apply(simulator.resolve(checkout_request_id))
        except Exception as e:
            logger.error(f"Failed to apply simulated STK result for {checkout_request_id}: {e}")

    def handle_charge_requested(event):
        """Handle payment.charge_requested event."""
        checkout_request_id = charge_handler.handle(event)
        if checkout_request_id and settings.mpesa_mode == "simulate":
            timer = threading.Timer(settings.stk_delay_seconds, resolve_later, args=(checkout_request_id,))
            timer.daemon = True
            timer.start()

    charge_consumer = BaseKafkaConsumer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id="mpesa-gateway-group",
        topics=["payment.charge_requested"],
        producer=producer,
    )

    def consume_charge_requests():
        try:
            charge_consumer.consume(handle_charge_requested)
        except Exception as e:
            logger.error(f"Error in charge consumer: {e}")

    threading.Thread(target=consume_charge_requests, daemon=True).start()
    logger.info("Charge consumer thread started")

    yield

    logger.info("Shutting down M-Pesa Gateway...")
    if charge_consumer:
        charge_consumer.stop()
    if producer:
        producer.close()


app = FastAPI(title="M-Pesa Gateway", version="1.0.0", lifespan=lifespan)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "mpesa-gateway",
        "version": "1.0.0",
    }


@app.post("/mpesa/callback")
def stk_callback(payload: Dict[str, Any]):
    """Daraja STK push callback. Always acknowledges a well-formed payload."""
    try:
        result = parse_stk_callback(payload)
    except ValueError as e:
        logger.warning(f"Rejected STK callback: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    applied = outcome_handler.apply(result, callback_data=payload)
    return {"ResultCode": 0, "ResultDesc": "Accepted" if applied else "Already processed"}


@app.get("/mpesa/transactions/{pos_transaction_id}")
def get_stk_push(pos_transaction_id: str):
    """Get the STK push record for a POS transaction."""
    with session_scope(SessionLocal) as db:
        record = MpesaRepository(db).find_by_pos_transaction_id(pos_transaction_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="STK push not found")

        return {
            "pos_transaction_id": record.pos_transaction_id,
            "checkout_request_id": record.checkout_request_id,
            "merchant_request_id": record.merchant_request_id,
            "phone_number": record.phone_number,
            "amount": str(record.amount),
            "status": record.status,
            "result_code": record.result_code,
            "result_desc": record.result_desc,
            "mpesa_receipt_number": record.mpesa_receipt_number,
            "created_at": record.created_at.isoformat(),
        }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.mpesa_gateway_port)
