"""
Example: Tract-Level Income Map Data

Fetches median household income and race counts for Orange County, CA
census tracts, attaches cartographic boundaries and computes shares of the
total population.

Author: Mir Md Tasnim Alam
"""

import os
import sys
import logging
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from census_geojoin import CensusPipeline, PipelineConfig

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def main():
    """Run tract-level analysis for Orange County, California."""

    # Get your API key from: https://api.census.gov/data/key_signup.html
    pipeline = CensusPipeline(PipelineConfig.from_env())

    # Median household income with boundaries
    print("Fetching ACS 5-Year tract income for Orange County...")
    income = pipeline.get_acs(
        geography="tract",
        variables={"income": "B19013_001"},
        state="CA",
        county="Orange",
        year=2019,
        geometry=True
    )

    report = income.attrs["join_report"]
    print(f"Retrieved {len(income)} tracts (CRS {income.crs})")
    if report.has_drops:
        print(f"  Dropped during join: {report.as_dict()}")

    # Race counts as a share of total population
    print("Fetching race counts with total population as summary...")
    race = pipeline.get_acs(
        geography="tract",
        variables={"white": "B02001_002", "black": "B02001_003", "asian": "B02001_005"},
        state="CA",
        county="Orange",
        year=2019,
        geometry=True,
        summary_var="B02001_001"
    )
    race = pipeline.transformer.calculate_rates(race, "estimate", "summary_est", "percent")

    # Summary
    print("\n=== Summary ===")
    print(f"Median of tract incomes: ${income['estimate'].median():,.0f}")
    print(race.groupby("variable")["percent"].mean().round(1).to_string())

    # Wide table for mapping tools that expect one row per tract
    wide = race.pivot(index="GEOID", columns="variable", values="percent")
    print(f"\nWide table: {wide.shape[0]} tracts x {wide.shape[1]} variables")

    return income, race


if __name__ == "__main__":
    main()
