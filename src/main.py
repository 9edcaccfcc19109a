"""
main.py

Entry point for the MentorMatch API.

Configures logging from the settings and starts uvicorn.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/health    ← liveness check
    http://localhost:8000/mcp       ← MCP endpoint (when MCP_ENABLED)

Quick-start walkthrough
-----------------------
1.  POST  /api/v1/students                       — register two students; each "id" is a token
2.  POST  /api/v1/supervisors                    — register a supervisor (max_capacity > 0)
3.  PATCH /api/v1/admin/supervisors/{id}/approval — approve them
                                                   Authorization: Bearer <SYSTEM_ADMIN_ID>
4.  POST  /api/v1/partnerships/request           — student A invites student B
5.  POST  /api/v1/partnerships/{id}/respond      — student B accepts
6.  POST  /api/v1/applications                   — student A applies to the supervisor
7.  PATCH /api/v1/applications/{id}/status       — the supervisor approves

Authentication note
-------------------
The bearer token is the raw user id.  This is for local testing only; put a
real identity provider in front of the service before going to production.
"""

import logging

import uvicorn

from api import create_app
from config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.LOG_LEVEL.lower(),
    )
