"""Odonto Protocols: treatment-protocol pipeline for dental evaluations.

Architecture Overview
=====================

Every protocol request flows through the same stages:

    request → validation → rate limit / credit pre-check
            → dispatch router → AI call (wrapped by metrics)
            → schema validation → credit consume
            → clinical safety rules → persistence
            → (multi-tooth flows) group reconciliation

1. **Validation** (``validation.py``, ``sanitizer.py``): closed enumerations,
   FDI tooth numbers, VITA shades, ceramic-type aliases, and prompt
   injection stripping for free text sent to the model.

2. **Dispatch** (``dispatch.py``): ``resina`` and ``porcelana`` call the AI;
   every other treatment gets a static generic protocol
   (``generic_protocols.py``).

3. **Safety** (``safety.py``): 10% → 5% HF etch correction for lithium
   disilicate and shade-catalog normalization of resin layers.

4. **Credits** (``services/credits.py``, ``services/rate_limit.py``):
   minute/hour/day windows plus idempotent consume/refund keyed by the
   request ID.

5. **Reconciliation** (``reconciliation.py``): one AI call per treatment
   group (the *primary* tooth), then the protocol is copied to siblings.

Key Design Decisions
--------------------
- **LLM**: Claude Sonnet via ``langchain-anthropic`` with a forced tool call,
  so responses are always structured JSON.
- **No automatic AI retries**: retry and regenerate are explicit user
  actions on persisted state.
- **Sequential multi-tooth loops**: one AI call at a time per request to stay
  under the provider's execution ceiling.
- **Shared state in the database only**: rate-limit and credit updates are
  single-statement upserts / conditional updates, safe across processes.

Package Structure
-----------------
- ``odonto/config.py`` — Configuration from env vars / SSM
- ``odonto/db.py`` — SQLAlchemy Core schema and engine factory
- ``odonto/models.py`` — Treatment types, evaluation, protocol records
- ``odonto/evaluations.py`` — Evaluation and pending-tooth repository
- ``odonto/inventory.py`` — Dentist resin inventory and budget filter
- ``odonto/container.py`` — Service wiring
- ``odonto/server.py`` — FastAPI application
- ``odonto/main.py`` — CLI (``validate`` / ``serve``)
- ``odonto/services/`` — AI client, metrics, credits, rate limiting, pipelines
- ``odonto/api/`` — FastAPI routes and Pydantic schemas
"""
