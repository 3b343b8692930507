from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from joinctl.api.middleware import AuthMiddleware
from joinctl.api.routes import records
from joinctl.config import Config
from joinctl.modules.k3s.catalog import CatalogStore

load_dotenv()


def create_app(catalog: Optional[CatalogStore] = None, api_key: Optional[str] = None) -> FastAPI:
    """Catalog API serving published cluster information to agents."""
    app = FastAPI(title="joinctl catalog")
    app.state.catalog = catalog if catalog is not None else CatalogStore(Config.CATALOG_PATH or None)
    app.add_middleware(AuthMiddleware, api_key=api_key)

    app.include_router(records.router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "records": len(app.state.catalog)}

    return app


app = create_app()
