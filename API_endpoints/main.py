# main.py
import logging
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.services import YelpServices
from .lifespan import lifespan
from .routes import hextiles, yelp

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def create_app(services: Optional[YelpServices] = None) -> FastAPI:
    app = FastAPI(title="Hexgrid", lifespan=lifespan)
    # Built in lifespan when not injected
    app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:8080", "http://127.0.0.1:8080"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # Include routers
    app.include_router(yelp.router)
    app.include_router(hextiles.router)
    return app


app = create_app()
