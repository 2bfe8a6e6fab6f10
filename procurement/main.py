from fastapi import FastAPI

from procurement.config import settings
from procurement.logging_config import configure_logging
from procurement.routers import lots, purchase_orders, receiving

configure_logging(settings.log_level, json_output=settings.log_json)

app = FastAPI(title='Procurement Core')

app.include_router(purchase_orders.router)
app.include_router(receiving.router)
app.include_router(lots.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
