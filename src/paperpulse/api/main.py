"""
PaperPulse API - admin control surface for ingestion and analysis workers
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import find_dotenv, load_dotenv

from .routes import admin

# Load local .env so Redis, database and OpenRouter settings are available in API mode.
load_dotenv(find_dotenv(usecwd=True), override=False)

app = FastAPI(
    title="PaperPulse API",
    description="Admin API for paper ingestion, backfill and AI analysis",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "version": "0.1.0"}


app.include_router(admin.router, prefix="/api", tags=["Admin"])


def main() -> None:
    import os

    import uvicorn

    uvicorn.run(app, host=os.getenv("PAPERPULSE_API_HOST", "0.0.0.0"), port=int(os.getenv("PAPERPULSE_API_PORT", "8000")))


if __name__ == "__main__":
    main()
