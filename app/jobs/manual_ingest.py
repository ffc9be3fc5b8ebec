import argparse
import json
from pathlib import Path

from app.config import get_settings
from app.db import get_connection
from app.services.country_resolver import CountryResolver
from app.services.ingest_service import ingest_payload
from app.services.repository import PostgresRepository


def main():
    parser = argparse.ArgumentParser(description="Ingest a local marriage statistics JSON file")
    parser.add_argument("--input", required=True, help="Path to the raw payload json file")
    parser.add_argument("--source", default=None, help="Source id recorded on the summary (defaults to file name)")
    args = parser.parse_args()

    path = Path(args.input)
    raw = path.read_bytes()
    resolver = CountryResolver.from_file(get_settings().country_mapping_path)

    with get_connection() as conn:
        repo = PostgresRepository(conn)
        result = ingest_payload(raw, str(path), repo, resolver=resolver, source_id=args.source or path.name)

    print(
        json.dumps(
            {
                "raw_payload_id": result.raw_payload_id,
                "summary_id": result.summary_id,
                "summary": result.summary.to_document(),
                "created_at": result.created_at.isoformat(),
            },
            ensure_ascii=False,
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
