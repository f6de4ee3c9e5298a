"""Checkout landing pages, health checks and metrics"""
from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["pages"])


@router.get("/success", response_class=PlainTextResponse)
def checkout_success():
    return "Payment successful. You can close this tab."


@router.get("/cancel", response_class=PlainTextResponse)
def checkout_cancel():
    return "Payment canceled."


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
