#!/usr/bin/env python3
"""
Local development server for the Sanctuary session engine.
Runs the API with in-process coordination and a local SQLite database.
"""

import os

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Set local development environment
os.environ.setdefault('ENVIRONMENT', 'development')
os.environ.setdefault('APP_ENV', 'dev')
os.environ.setdefault('COORDINATION_BACKEND', 'local')

if os.getenv('MEDIA_TOKEN_SECRET', 'change-me') == 'change-me':
    print("WARNING: MEDIA_TOKEN_SECRET is not set; media join tokens use the development secret")

if __name__ == "__main__":
    import uvicorn

    print("Starting Sanctuary session engine API")
    print("Docs: http://localhost:8000/docs")
    print("Health Check: http://localhost:8000/health")
    print("Session stream: ws://localhost:8000/ws/sessions/<session_id>?participant_id=<id>")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "sanctuary_engine.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=True,
        log_level="info"
    )
