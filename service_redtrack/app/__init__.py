"""
RedTrack reporting service package for the VMetrics Access Layer.

The service fronts dashboard requests for RedTrack data, enforcing:
- A single throttled, cached fetch queue for every upstream call
- API-key extraction and date validation on incoming requests
- Shallow reshaping of RedTrack payloads into dashboard shapes

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.throttling: Fetch queue, rate-limiter state and TTL response cache.
- app.adapters: RedTrack HTTP client built on the fetch queue.
- app.domain: Pure aggregation of report, conversion and campaign rows.
"""
