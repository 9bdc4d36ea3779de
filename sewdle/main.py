from fastapi import FastAPI

from sewdle.config import settings
from sewdle.logging_config import configure_logging
from sewdle.routers import deliveries, inventory_sync

configure_logging(settings.log_level, json_output=settings.log_json)

app = FastAPI(title='Sewdle Delivery Quality & Inventory Sync')

app.include_router(deliveries.router)
app.include_router(inventory_sync.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
