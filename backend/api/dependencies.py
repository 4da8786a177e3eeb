"""
API Dependencies

FastAPI dependency injection for the durable store and the pricing services.

Services are built once per worker in the application lifespan and stored
on app.state; tests replace them through app.dependency_overrides.
"""

from fastapi import Depends, HTTPException, Request, status

from integrations.energidata import (
    PricelistService,
    PricingServices,
    SpotPriceService,
    TariffService,
)


def get_pricing_services(request: Request) -> PricingServices:
    services = getattr(request.app.state, "pricing_services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pricing services not initialised",
        )
    return services


def get_tariff_service(services: PricingServices = Depends(get_pricing_services)) -> TariffService:
    return services.tariffs


def get_pricelist_service(services: PricingServices = Depends(get_pricing_services)) -> PricelistService:
    return services.pricelists


def get_spot_price_service(services: PricingServices = Depends(get_pricing_services)) -> SpotPriceService:
    return services.spot_prices
