from prometheus_client import CollectorRegistry, Counter, generate_latest, CONTENT_TYPE_LATEST

PROM_REGISTRY = CollectorRegistry()

WEBHOOKS_RECEIVED = Counter(
    "gateway_webhooks_received_total", "Webhooks accepted by ingress", ["platform"], registry=PROM_REGISTRY
)
WEBHOOKS_REJECTED = Counter(
    "gateway_webhooks_rejected_total", "Webhooks rejected or failed by ingress", ["platform", "reason"],
    registry=PROM_REGISTRY,
)
AUDIT_PERSISTENCE_FAILURES = Counter(
    "gateway_audit_persistence_failures_total", "Best-effort audit writes that failed", ["table"],
    registry=PROM_REGISTRY,
)
OUTBOUND_MESSAGES = Counter(
    "gateway_outbound_messages_total", "Outbound sends by terminal status", ["platform", "status"],
    registry=PROM_REGISTRY,
)
TOKEN_ROTATION = Counter(
    "gateway_token_rotation_total", "Token lifecycle outcomes per scanned integration", ["outcome"],
    registry=PROM_REGISTRY,
)


def render():
    return generate_latest(PROM_REGISTRY), CONTENT_TYPE_LATEST
