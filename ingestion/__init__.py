"""
Catalog Ingestion Service.

Stages venues, dishes, promotions and retail availability from discovery
scrapers and data partners, scores them and promotes trusted records to the
production catalog.
"""
