"""Main FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from treasury.api.routes import router
from treasury.config import settings
from treasury.database import Base, engine
from treasury.logging_config import logger
# Import models to register them with SQLAlchemy Base
from treasury.models.audit import AuditEntry  # noqa: F401
from treasury.models.domain import Attachment, FundDeposit, LineItem, Reimbursement, User  # noqa: F401

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Reimbursement and fund deposit tracking for the IEEE UCSD student branch.",
    version="0.1.0"
)

# Enable CORS for the dashboard frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if not settings.is_production else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api", tags=["Treasury"])

logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
