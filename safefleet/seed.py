import os
import logging
from typing import Dict
import pandas as pd
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from .schemas import TOPIC_RECORDS

logger = logging.getLogger(__name__)

# TOPIC_RECORDS is declared parents first
SEED_ORDER = list(TOPIC_RECORDS)

LIST_SEPARATOR = ";"

def _row_payload(topic: str, row: Dict) -> Dict:
    """Drop empty cells so record defaults apply, and split list columns."""
    payload = {k: v for k, v in row.items() if v != ""}
    if topic == "drivers" and "obc_key_ids" in payload:
        payload["obc_key_ids"] = [
            key.strip() for key in str(payload["obc_key_ids"]).split(LIST_SEPARATOR) if key.strip()
        ]
    return payload

def load_seed_data(store, seed_dir: str) -> Dict[str, int]:
    """Load ``<topic>.csv`` files into empty collections; returns rows loaded per topic."""
    loaded: Dict[str, int] = {}
    if not os.path.isdir(seed_dir):
        logger.info("No seed directory at %s, skipping", seed_dir)
        return loaded

    for topic in SEED_ORDER:
        csv_path = os.path.join(seed_dir, f"{topic}.csv")
        if not os.path.exists(csv_path):
            continue
        if store.count(topic) > 0:
            logger.info("Collection %s already populated, not seeding", topic)
            continue

        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
        count = 0
        for row in df.to_dict(orient="records"):
            try:
                store.create(topic, _row_payload(topic, row))
                count += 1
            except (ValidationError, IntegrityError) as e:
                # Skip the bad row, keep loading the rest
                logger.warning("Skipping invalid %s row %s: %s", topic, row.get("id"), e)
        loaded[topic] = count
        logger.info("Seeded %d %s record(s) from %s", count, topic, csv_path)

    return loaded
