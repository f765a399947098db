from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from foodbridge.api import routers
from foodbridge.core.config import get_settings
from foodbridge.core.dependencies import get_donation_gateway
from foodbridge.core.logging_config import configure_logging

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Stop the snapshot watcher and open streams, if a gateway was ever built
    if get_donation_gateway.cache_info().currsize:
        get_donation_gateway().close()


app = FastAPI(
    title="FoodBridge Donations",
    root_path=get_settings().API_ROOT_PATH,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your frontend domain(s)
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
def read_root():
    return {"message": "Welcome to the FoodBridge donations API"}


app.include_router(routers.router)

handler = Mangum(app)
