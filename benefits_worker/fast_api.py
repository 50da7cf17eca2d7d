import uvicorn
from fastapi import FastAPI

from benefits_worker.endpoints.ops_endpoints import router as ops_router

# Только ops-эндпоинты, без фонового воркера (воркер поднимает benefits_worker.main)
app = FastAPI(title="Benefits Task Worker (ops)", version="0.1.0")
app.include_router(ops_router, tags=["ops"])

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
