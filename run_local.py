#!/usr/bin/env python
"""Local development script for running story-relay."""
import os
import uvicorn

# Set environment variables for local development
os.environ.update({
    "DEBUG": "true",
    "HOST": "127.0.0.1",
    "PORT": "8081",
    "ANALYSIS_AI_URL": os.environ.get("ANALYSIS_AI_URL", "http://localhost:8000"),
    "IMAGE_AI_URL": os.environ.get("IMAGE_AI_URL", "http://localhost:8001"),
    "RAG_AI_URL": os.environ.get("RAG_AI_URL", "http://localhost:8002"),
    "MUSIC_AI_URL": os.environ.get("MUSIC_AI_URL", "http://localhost:8003"),
})

if __name__ == "__main__":
    print("Starting story-relay in development mode")
    print("API: http://127.0.0.1:8081")
    print("Docs: http://127.0.0.1:8081/docs")
    print("Health: http://127.0.0.1:8081/ai/health")

    # Run with auto-reload
    uvicorn.run("main:create_app", factory=True, host="127.0.0.1", port=8081, reload=True)
