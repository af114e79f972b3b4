"""
Catalog Config Parser

Parses an Excel workbook describing chains, tokens and bridge routes and
generates the catalog section of the crosschain YAML config.

Sheets:
- chains: id, name, native_symbol, is_testnet
- tokens: id, symbol, decimals, networks (comma separated)
- routes: provider, provider_name, source_chain, destination_chain, token, fee, minutes
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
import yaml
from loguru import logger

from .errors import ConfigError


class CatalogConfigParser:
    """
    Parse a workbook and generate the route catalog YAML

    Features:
    - One row per (provider, source, destination, token)
    - Rows with fee '-' are treated as unavailable and skipped
    - Output loads directly with RouteCatalog.from_yaml
    """

    REQUIRED_COLUMNS = {
        'chains': ['id'],
        'tokens': ['id', 'networks'],
        'routes': ['provider', 'source_chain', 'destination_chain', 'token'],
    }

    def __init__(self, excel_path: Optional[Union[str, Path]] = None):
        """
        Initialize parser

        Args:
            excel_path: Path to Excel workbook
        """
        self.excel_path = Path(excel_path) if excel_path else None
        self.catalog: Dict = {'chains': [], 'tokens': [], 'providers': []}
        self.metadata: Dict = {
            'generated_at': None,
            'source': str(excel_path) if excel_path else None,
        }

    def read_workbook(self) -> Dict[str, pd.DataFrame]:
        """Read the three catalog sheets"""
        if self.excel_path is None:
            raise ConfigError("No workbook path given")

        logger.info(f"Parsing catalog from {self.excel_path}")
        try:
            sheets = pd.read_excel(self.excel_path, sheet_name=None)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read workbook {self.excel_path}: {e}") from e

        missing = [name for name in self.REQUIRED_COLUMNS if name not in sheets]
        if missing:
            raise ConfigError(f"Workbook is missing sheets: {missing}")
        return sheets

    def parse(self, sheets: Optional[Dict[str, pd.DataFrame]] = None) -> Dict:
        """
        Parse sheets into the catalog layout

        Args:
            sheets: DataFrames keyed by sheet name (read from the workbook if omitted)

        Returns:
            Catalog dict with 'chains', 'tokens' and 'providers'
        """
        sheets = sheets if sheets is not None else self.read_workbook()

        for name, columns in self.REQUIRED_COLUMNS.items():
            frame = sheets.get(name)
            if frame is None:
                raise ConfigError(f"Missing sheet: {name}")
            absent = [c for c in columns if c not in frame.columns]
            if absent:
                raise ConfigError(f"Sheet '{name}' is missing columns: {absent}")

        self.catalog = {
            'chains': self.parse_chains(sheets['chains']),
            'tokens': self.parse_tokens(sheets['tokens']),
            'providers': self.parse_routes(sheets['routes']),
        }
        self.metadata['generated_at'] = datetime.now().isoformat()

        logger.info(
            f"Parsed {len(self.catalog['chains'])} chains, {len(self.catalog['tokens'])} tokens, "
            f"{len(self.catalog['providers'])} providers"
        )
        return self.catalog

    def parse_chains(self, df: pd.DataFrame) -> List[Dict]:
        chains = []
        for _, row in df.iterrows():
            chain_id = _cell(row, 'id')
            if not chain_id:
                continue
            chains.append({
                'id': chain_id,
                'name': _cell(row, 'name') or chain_id,
                'native_symbol': _cell(row, 'native_symbol') or '',
                'is_testnet': _flag(row.get('is_testnet')),
            })
        return chains

    def parse_tokens(self, df: pd.DataFrame) -> List[Dict]:
        tokens = []
        for _, row in df.iterrows():
            token_id = _cell(row, 'id')
            if not token_id:
                continue
            decimals = row.get('decimals')
            tokens.append({
                'id': token_id,
                'symbol': _cell(row, 'symbol') or token_id.upper(),
                'decimals': int(decimals) if pd.notna(decimals) else 18,
                'networks': _split(_cell(row, 'networks')),
            })
        return tokens

    def parse_routes(self, df: pd.DataFrame) -> List[Dict]:
        """Group route rows into provider entries, in first-seen order"""
        providers: Dict[str, Dict] = {}
        route_tokens: Dict[str, Dict] = {}
        times: Dict[str, Dict] = {}

        for index, row in df.iterrows():
            provider_id = _cell(row, 'provider')
            source = _cell(row, 'source_chain')
            destination = _cell(row, 'destination_chain')
            token = _cell(row, 'token')
            if not (provider_id and source and destination and token):
                continue

            fee = row.get('fee')
            # '-' marks a route that is not available
            if isinstance(fee, str) and fee.strip() == '-':
                continue

            entry = providers.setdefault(provider_id, {
                'id': provider_id,
                'name': _cell(row, 'provider_name') or provider_id,
                'supported_routes': [],
                'fee_by_token': {},
                'estimated_time': [],
            })
            pairs = route_tokens.setdefault(provider_id, {})
            if (source, destination) not in pairs:
                route = {'source_chain': source, 'destination_chain': destination, 'tokens': []}
                entry['supported_routes'].append(route)
                pairs[(source, destination)] = route
            if token not in pairs[(source, destination)]['tokens']:
                pairs[(source, destination)]['tokens'].append(token)

            if fee is not None and pd.notna(fee):
                previous = entry['fee_by_token'].get(token)
                if previous is not None and previous != str(fee):
                    logger.warning(f"Row {index}: {provider_id}/{token} fee {fee} overrides {previous}")
                entry['fee_by_token'][token] = str(fee)

            minutes = row.get('minutes')
            if minutes is not None and pd.notna(minutes):
                times.setdefault(provider_id, {})[(source, destination)] = int(minutes)

        for provider_id, entry in providers.items():
            entry['estimated_time'] = [
                {'source_chain': s, 'destination_chain': d, 'minutes': m}
                for (s, d), m in times.get(provider_id, {}).items()
            ]

        return list(providers.values())

    def generate_yaml(self, output_path: Union[str, Path] = "crosschain_catalog.yaml") -> Path:
        """
        Generate the catalog YAML file

        Args:
            output_path: Output file path

        Returns:
            Path written
        """
        if not any(self.catalog.values()):
            self.parse()

        output_path = Path(output_path)
        with open(output_path, 'w', encoding='utf-8') as f:
            yaml.dump(
                {'catalog': self.catalog, 'metadata': self.metadata},
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"✓ Generated {output_path}")
        return output_path

    def print_summary(self):
        """Print catalog summary"""
        print("\n" + "="*80)
        print("ROUTE CATALOG SUMMARY")
        print("="*80)
        print(f"Chains: {', '.join(c['id'] for c in self.catalog['chains'])}")
        print(f"Tokens: {', '.join(t['id'] for t in self.catalog['tokens'])}")

        for provider in self.catalog['providers']:
            print(f"\n{provider['name'].upper()}:")
            print(f"  Routes: {len(provider['supported_routes'])}")
            if provider['fee_by_token']:
                cheapest = min(provider['fee_by_token'].items(), key=lambda x: float(x[1]))
                print(f"  Cheapest token: {cheapest[0]} ({cheapest[1]})")
            if provider['estimated_time']:
                fastest = min(provider['estimated_time'], key=lambda x: x['minutes'])
                print(f"  Fastest: {fastest['source_chain']} → {fastest['destination_chain']} ({fastest['minutes']}min)")

        print("\n" + "="*80)


def _cell(row: pd.Series, column: str) -> Optional[str]:
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def _flag(value) -> bool:
    if value is None or pd.isna(value):
        return False
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'y')
    return bool(value)


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m crosschain_transfer.catalog_config_parser <workbook.xlsx> [output.yaml]")
        sys.exit(1)

    parser = CatalogConfigParser(sys.argv[1])
    parser.parse()
    parser.generate_yaml(sys.argv[2] if len(sys.argv) > 2 else "crosschain_catalog.yaml")
    parser.print_summary()
