# fulfillment_engine/demo/seed_demo_data.py

from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog

from fulfillment_engine.config.loader import EngineConfig, parse_engine_config
from fulfillment_engine.core.identity import ConfigRoleProvider
from fulfillment_engine.core.lifecycle import RequestLifecycle
from fulfillment_engine.core.quota import period_key_for
from fulfillment_engine.storage.models import Actor, Role

logger = structlog.get_logger(__name__)

# Mirrors engine.example.yaml
DEMO_CONFIG = {
    "billing_timezone": "America/Chicago",
    "admins": ["ops-admin"],
    "balancer": {"max_backlog_assigned_percent": 90},
    "services": {
        "logo_design": {"price": 50, "sla": {"days": 1}},
        "social_post": {"price": 15, "sla": {"hours": 12}},
        "banner": {"price": 30, "sla": {"days": 2}},
    },
    "bundles": {
        "brand_kit": {"price": 250, "sla": {"days": 5}},
    },
    "vendors": {
        "studio_internal": {
            "internal": True,
            "weight": 2,
            "designers": ["dana", "eli"],
        },
        "pixel_partners": {
            "weight": 1,
            "max_share_percent": 50,
            "max_open_per_designer": 5,
            "designers": ["pp-ana"],
            "service_costs": {"logo_design": 20, "social_post": 6, "banner": 12, "brand_kit": 100},
        },
        "northwind_design": {
            "weight": 1,
            "kinds": ["ad_hoc"],
            "daily_capacity": 10,
            "designers": ["nw-kai"],
            "service_costs": {"logo_design": 22, "social_post": 7, "banner": 11},
        },
    },
}

DEMO_ADMIN = Actor("ops-admin", Role.ADMIN)


def demo_config() -> EngineConfig:
    return parse_engine_config(DEMO_CONFIG)


def seed_demo_data(lifecycle: RequestLifecycle, now: Optional[datetime] = None) -> Dict[str, int]:
    """Populate a database with a month of representative activity.

    Opens a pack period for one client, submits requests for two clients
    (one without a pack, so it bills at standalone prices), and walks them
    through assignment, delivery and a change request. Deliveries by outside
    vendors leave payables behind. Assumes the config contains the demo
    catalog.

    Returns:
        Counts of what was created
    """
    now = now or datetime.now()
    period_key = period_key_for(now, lifecycle.config.timezone)
    assigned_at = now - timedelta(hours=30)

    period = lifecycle.quota.open_period(
        "acme", "starter_pack", period_key,
        included={"logo_design": 6, "social_post": 4},
        price=100,
    )

    submissions = [
        ("acme", "logo_design", 4),
        ("acme", "logo_design", 3),
        ("acme", "social_post", 2),
        ("acme", "brand_kit", 1),
        ("globex", "banner", 2),
        ("globex", "social_post", 1),
    ]
    requests = []
    for client_id, service_id, quantity in submissions:
        client = Actor(client_id, Role.CLIENT)
        created = lifecycle.create_request(
            client, client_id, service_id, quantity=quantity, now=assigned_at - timedelta(hours=2)
        )
        requests.append(created.request)

    lifecycle.take(requests[0].id, Actor("dana", Role.INTERNAL_DESIGNER), now=assigned_at)
    for request in requests[1:5]:
        lifecycle.assign(request.id, DEMO_ADMIN, now=assigned_at)

    roles = ConfigRoleProvider(lifecycle.config)
    delivered = 0
    for request in requests[:3]:
        assignee_id = lifecycle.get_request(request.id).assignee_id
        lifecycle.deliver(request.id, Actor(assignee_id, roles.role_of(assignee_id)), now=now)
        delivered += 1
    lifecycle.request_change(requests[3].id, Actor("acme", Role.CLIENT), note="Use the new palette", now=now)

    counts = {
        "pack_periods": 1,
        "requests": len(requests),
        "delivered": delivered,
        "change_requests": 1,
        "vendor_payables": len(lifecycle.payables.list_payables()),
    }
    logger.info("Demo data seeded", period_id=period.id, **counts)
    return counts
