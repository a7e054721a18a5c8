import logging
import math
import os
import re
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Sequence

import numpy as np
import pandas as pd
import requests

logger = logging.getLogger(__name__)

MARKET_COLUMNS = ["year", "equities_price", "equities_dividend", "inflation_index", "fixed_income_interest"]

# This is the link found in https://shillerdata.com/
SHILLER_DATA_URL = ("https://img1.wsimg.com/blobby/go/e5e77e0b-59d1-44d9-ab25-4763ac982e53/downloads/"
                    "9becfac9-1778-47a6-b40e-299d8c616706/ie_data.xls")


class InvalidMarketDataError(ValueError):
    """Raised when a market data series is malformed or contains unusable values."""


@dataclass(frozen=True)
class MarketYearData:
    year: int
    equities_price: float
    equities_dividend: float
    inflation_index: float
    fixed_income_interest: float  # percent, e.g. 2.5 for 2.5%


def validate_market_data(market_data: Sequence[MarketYearData]) -> None:
    """
    Check that a series is usable by the engine: non-empty, one record per year in
    ascending order with no gaps, finite values, positive prices and inflation index.
    """
    if len(market_data) == 0:
        raise InvalidMarketDataError("Market data series is empty")

    first_year = market_data[0].year
    for offset, record in enumerate(market_data):
        if record.year != first_year + offset:
            raise InvalidMarketDataError(
                f"Market data must be sorted by year with no gaps: expected {first_year + offset}, "
                f"got {record.year} at position {offset}"
            )
        values = (record.equities_price, record.equities_dividend,
                  record.inflation_index, record.fixed_income_interest)
        if not all(math.isfinite(v) for v in values):
            raise InvalidMarketDataError(f"Market data for {record.year} contains NaN or infinite values")
        if record.equities_price <= 0:
            raise InvalidMarketDataError(
                f"Equities price must be positive, got {record.equities_price} in {record.year}"
            )
        if record.equities_dividend < 0:
            raise InvalidMarketDataError(
                f"Equities dividend cannot be negative, got {record.equities_dividend} in {record.year}"
            )
        if record.inflation_index <= 0:
            raise InvalidMarketDataError(
                f"Inflation index must be positive, got {record.inflation_index} in {record.year}"
            )


def get_year_index(market_data: Sequence[MarketYearData], year: int) -> int:
    """Position of a calendar year within a gap-free series."""
    return int(year) - market_data[0].year


def get_max_simulation_length(market_data: Sequence[MarketYearData]) -> int:
    """Longest cycle the series supports; the final simulated year needs the following year's record."""
    return len(market_data) - 1


def market_data_to_frame(market_data: Sequence[MarketYearData]) -> pd.DataFrame:
    return pd.DataFrame([asdict(record) for record in market_data], columns=MARKET_COLUMNS)


def market_data_from_frame(df: pd.DataFrame) -> List[MarketYearData]:
    """Build records from a frame holding the MARKET_COLUMNS columns."""
    missing = [col for col in MARKET_COLUMNS if col not in df.columns]
    if missing:
        raise InvalidMarketDataError(f"Market data frame is missing columns: {', '.join(missing)}")

    return [
        MarketYearData(
            year=int(row.year),
            equities_price=float(row.equities_price),
            equities_dividend=float(row.equities_dividend),
            inflation_index=float(row.inflation_index),
            fixed_income_interest=float(row.fixed_income_interest),
        )
        for row in df[MARKET_COLUMNS].itertuples(index=False)
    ]


def parse_market_csv(csv_string: str, headers: bool = True) -> List[MarketYearData]:
    """
    Parse CSV text with columns year, equities price, dividend per share,
    inflation index and fixed income interest (percent).

    Accepts CR, LF or CRLF line endings. A trailing blank line is discarded.
    Malformed numbers raise InvalidMarketDataError naming the offending line.
    """
    rows = re.split(r"\r\n|\n|\r", csv_string)
    first_line_no = 1
    if headers and rows:
        rows = rows[1:]
        first_line_no = 2
    while rows and not rows[-1].strip():
        rows.pop()
    if not rows:
        return []

    width = len(MARKET_COLUMNS)
    df = pd.DataFrame([row.split(",")[:width] for row in rows]).reindex(columns=range(width))
    df.columns = MARKET_COLUMNS

    # Short rows leave None/NaN cells, which coerce to NaN like any other bad field
    numeric = df.apply(lambda col: pd.to_numeric(col.astype(str).str.strip(), errors="coerce"))
    bad_rows = numeric.isna().any(axis=1)
    if bad_rows.any():
        pos = int(np.flatnonzero(bad_rows.values)[0])
        raise InvalidMarketDataError(f"Malformed market data on line {first_line_no + pos}: {rows[pos]!r}")
    if not (numeric["year"] % 1 == 0).all():
        pos = int(np.flatnonzero((numeric["year"] % 1 != 0).values)[0])
        raise InvalidMarketDataError(f"Year must be an integer on line {first_line_no + pos}: {rows[pos]!r}")

    return market_data_from_frame(numeric)


def read_market_csv(path, headers: bool = True) -> List[MarketYearData]:
    return parse_market_csv(Path(path).read_text(encoding="utf-8"), headers=headers)


def parse_shiller_date(series):
    """
    Convert Shiller-style yyyy.mm strings/floats into proper datetimes.
    Examples:
      1950.01 -> 1950-01-01
      1950.1  -> 1950-10-01
      1950.11 -> 1950-11-01
    """
    s = series.astype(str).str.strip()

    def _norm(val):
        year, month_part = val.split(".", 1)
        # Special case: .1 means October (Excel dropped the zero)
        if month_part == "1":
            month = "10"
        else:
            month = month_part.zfill(2)
        return f"{year}-{month}-01"

    return pd.to_datetime(s.map(_norm), format="%Y-%m-%d")


def needs_update(path, days=30):
    """
    Checks if the supplied file is missing or older than the given number of days.
    """
    if not path.exists():
        return True
    age_days = (time.time() - path.stat().st_mtime) / (24 * 3600)
    return age_days > days


def load_shiller_data(local_path=None):
    """
    Download (when missing or stale) and load the monthly Shiller workbook.
    Returns a frame with collapsed header names and a parsed Date column.
    """
    local_path = Path(local_path) if local_path is not None else Path(os.path.join("tempdir", "shillerdata.xls"))

    if needs_update(local_path):
        logger.info("Downloading Shiller data to %s", local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        r = requests.get(SHILLER_DATA_URL, timeout=60)
        r.raise_for_status()
        with open(local_path, "wb") as f:
            f.write(r.content)

    # Read multi-line headers (rows 4-7) and collapse them
    headers_raw = pd.read_excel(local_path, sheet_name="Data", skiprows=4, nrows=4, header=None)
    headers = (
        headers_raw.fillna("")
        .astype(str)
        .agg(" ".join)
        .str.strip()
        .str.replace(r"\s+", " ", regex=True)
    )

    # Read the actual data (starting row 8)
    df = pd.read_excel(local_path, sheet_name="Data", skiprows=8)
    df.columns = headers

    # Drop footnote rows, which have no parseable date
    df = df[pd.to_numeric(df["Date"], errors="coerce").notna()].reset_index(drop=True)

    df["Date"] = parse_shiller_date(df["Date"])
    return df


def _find_shiller_column(df, token):
    """Locate a Shiller column by the short code that ends its collapsed header (P, D, CPI, GS10)."""
    for col in df.columns:
        parts = str(col).split()
        if parts and parts[-1] == token:
            return col
    raise InvalidMarketDataError(f"Shiller data has no column ending in {token!r}")


def shiller_to_market_data(df: pd.DataFrame, month: int = 1) -> List[MarketYearData]:
    """
    Reduce the monthly Shiller frame to one record per year, taken from the given month.
    Trailing years with incomplete figures are dropped.
    """
    columns = {
        "equities_price": _find_shiller_column(df, "P"),
        "equities_dividend": _find_shiller_column(df, "D"),
        "inflation_index": _find_shiller_column(df, "CPI"),
        "fixed_income_interest": _find_shiller_column(df, "GS10"),
    }
    monthly = df[df["Date"].dt.month == int(month)]

    annual = pd.DataFrame({"year": monthly["Date"].dt.year})
    for name, source in columns.items():
        annual[name] = pd.to_numeric(monthly[source], errors="coerce")

    complete = annual.notna().all(axis=1).values
    if not complete.any():
        raise InvalidMarketDataError(f"No complete Shiller records for month {month}")

    # Trim incomplete rows at either end; a hole in between would leave a gap
    first = int(np.argmax(complete))
    last = len(complete) - int(np.argmax(complete[::-1]))
    if not complete[first:last].all():
        gap_year = int(annual["year"].iloc[first + int(np.argmin(complete[first:last]))])
        raise InvalidMarketDataError(f"Shiller data is incomplete for {gap_year}, inside the series")
    if first > 0:
        logger.warning("Dropping %d leading incomplete Shiller rows", first)
    if last < len(complete):
        logger.warning("Dropping %d trailing incomplete Shiller rows", len(complete) - last)
    annual = annual.iloc[first:last].reset_index(drop=True)

    market_data = market_data_from_frame(annual)
    validate_market_data(market_data)
    return market_data


def get_cached_market_data(cache, month=1):
    """Return annual Shiller market data from the supplied cache, loading if necessary."""
    key = f"market_data_{int(month)}"
    market_data = cache.get(key)
    if market_data is None:
        market_data = shiller_to_market_data(load_shiller_data(), month=month)
        cache[key] = market_data
    return market_data
