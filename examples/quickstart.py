#!/usr/bin/env python3
"""Incident Sentinel quickstart.

Walks one attacker through the detection and response pipeline:

1. Create a SecurityEngine with an in-memory store and a recording enforcer.
2. Scan a benign and a whitelisted input.
3. Scan three UNION SELECT payloads from the same source.
4. Touch the honeypot that was deployed against the source.
5. Inspect status, the attacker profile and honeypot intelligence.
6. Verify the incident log hash chain.

Run:
    python examples/quickstart.py
"""
from __future__ import annotations

import asyncio
import json
import logging

from incident_sentinel import EngineConfig, SecurityEngine
from incident_sentinel.core.interfaces import (
    InMemoryIncidentStore,
    NullInterceptor,
    RecordingEnforcer,
)

ATTACKER = "203.0.113.50"


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-7s %(name)s: %(message)s")

    # -- Step 1: Create the engine -----------------------------------------
    enforcer = RecordingEnforcer()
    engine = SecurityEngine(
        EngineConfig(),
        enforcer,
        store=InMemoryIncidentStore(),
        interceptor=NullInterceptor(),
    )
    print("[1] Engine created")

    # -- Step 2: Benign input ------------------------------------------------
    print(f"[2] 'jane.doe' safe: {engine.scan('jane.doe', 'username', source_id=ATTACKER).safe}")
    whitelisted = engine.scan(
        "Meet me at Union Station, then select a table", "search", source_id=ATTACKER,
    )
    print(f"    whitelisted phrase safe: {whitelisted.safe}")

    # -- Step 3: Three injection attempts ----------------------------------
    for attempt in range(1, 4):
        result = engine.scan(
            f"{attempt} UNION SELECT username, password FROM users",
            "search",
            source_id=ATTACKER,
        )
        (classification,) = await engine.process_pending()
        print(
            f"[3] attempt {attempt}: severity={result.severity} "
            f"state={classification.state}",
        )
    print(f"    enforcer calls: {[name for name, _ in enforcer.calls]}")

    # -- Step 4: The attacker probes the decoy -------------------------------
    (honeypot,) = engine.honeypots.honeypots_for(ATTACKER)
    engine.record_honeypot_interaction(
        honeypot.honeypot_id, "/api/admin/users", "id=1' OR 1=1 --",
    )
    await engine.tick()
    print(f"[4] honeypot {honeypot.honeypot_id} touched")

    # -- Step 5: Inspect -----------------------------------------------------
    status = await engine.get_status()
    print(f"[5] threat level: {status.threat_level}")
    print(f"    active countermeasures: {sorted(status.active_countermeasures)}")
    intel = engine.get_honeypot_intelligence(ATTACKER)
    print(f"    honeypot intelligence: {json.dumps(intel.to_dict(), indent=2)}")

    # -- Step 6: Verify the audit trail --------------------------------------
    verification = await engine.incident_log.verify_chain()
    print(f"[6] incident chain valid: {verification.valid} ({verification.records_checked} records)")


if __name__ == "__main__":
    asyncio.run(main())
