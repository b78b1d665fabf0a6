import asyncio

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.requests import ClientDisconnect

from packages.integration.config import Settings
from packages.integration.db import SessionLocal
from packages.integration.errors import IntegrationError
from packages.integration.health import HealthService, ServiceClock
from packages.integration.ingress import HttpForwarder, WebhookIngress
from packages.integration.logs import get_logger
from packages.integration.metrics import render
from packages.integration.registry import ChannelRegistry, InboundMessageStore
from packages.integration.vault import CredentialVault

settings = Settings.from_env("webhook-receiver")
logger = get_logger("webhook_receiver")
app = FastAPI(title="Integration Gateway Webhook Receiver")
health = HealthService(settings.service_name, settings.version, ServiceClock(), SessionLocal)

# Tenant enrichment needs the vault to read channel rows
registry = None
if settings.encryption_key:
	registry = ChannelRegistry(CredentialVault.from_settings(settings))
else:
	logger.warning("ENCRYPTION_KEY not set; inbound messages will not be matched to tenants")

forwarder = HttpForwarder(settings.messaging_service_url, timeout=settings.forward_timeout, version=settings.version)
ingress = WebhookIngress(settings, InboundMessageStore(), forwarder, registry)


@app.exception_handler(IntegrationError)
async def integration_error(request: Request, exc: IntegrationError):
	return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.get("/webhooks/{platform}")
async def verify(platform: str, request: Request):
	q = request.query_params
	challenge = ingress.verify_challenge(platform, q.get("hub.mode"), q.get("hub.verify_token"), q.get("hub.challenge"))
	# Meta expects the challenge echoed back untouched
	return PlainTextResponse(challenge)


@app.post("/webhooks/{platform}")
async def receive(platform: str, request: Request):
	try:
		body = await request.body()
	except ClientDisconnect:
		body = None
	result = await asyncio.to_thread(ingress.handle, platform, body, request.headers)
	return {
		"code": "SUCCESS",
		"message": "webhook processed",
		"data": {
			"inbound_id": result.inbound_id,
			"message_id": result.message.message_id if result.message else None,
			"stage": result.stage.value,
		},
	}


@app.get("/healthz")
async def healthz():
	return await asyncio.to_thread(health.report)


@app.get("/metrics")
async def metrics():
	data, content_type = render()
	return Response(content=data, media_type=content_type)
