import argparse
import json
import logging

from app.api.dependencies import build_components
from app.db import get_connection
from app.services.query_resolver import QueryResolver
from app.services.region_codes import is_valid_fin_year
from app.services.repository import PostgresRepository


def run_refresh(state: str, fin_year: str, district: str | None = None, *, connection_factory=get_connection) -> dict:
    components = build_components()
    with connection_factory() as conn:
        repo = PostgresRepository(conn)
        resolver = QueryResolver(repo, components.upstream, components.fallback_periods)
        fetched_count, result = resolver.refresh(state, fin_year, district)
    return {
        "state": state,
        "fin_year": fin_year,
        "district": district,
        "fetched_count": fetched_count,
        "stored_count": result.stored_count,
        "state_count": result.state_count,
        "district_count": result.district_count,
        "period_count": result.period_count,
    }


def main():
    parser = argparse.ArgumentParser(description="Fetch one state/period batch from data.gov.in and merge it into storage")
    parser.add_argument("--state", required=True, help="State name, e.g. KERALA")
    parser.add_argument("--fin-year", required=True, help="Financial year label, e.g. 2024-2025")
    parser.add_argument("--district", default=None, help="Optional district name")
    args = parser.parse_args()
    if not is_valid_fin_year(args.fin_year):
        parser.error("--fin-year must look like 2024-2025")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    summary = run_refresh(args.state, args.fin_year, args.district)
    print(json.dumps(summary, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
