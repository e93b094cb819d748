"""
Support Relay service package.

Bridges Plain webhook deliveries to browsers waiting on a support thread.
Key modules include:

- app.main: FastAPI app and HTTP endpoints
- app.broker: In-memory topic registry and event envelopes
- app.sse: Server-Sent Events sessions and session manager
- app.webhooks: Plain webhook adapter (topic extraction + publish)
- app.notifications: Best-effort side notification channel
"""
