"""
External API Integrations

Energi Data Service (api.energidataservice.dk):
- DatahubPricelist: grid tariffs and provider price lists
- Elspotprices: hourly wholesale spot prices

See integrations.energidata for the client, caching and services.
"""
