"""Root pytest configuration: environment for the pipeline tests."""

from pathlib import Path

from dotenv import load_dotenv

# Channel credentials and DATABASE_URL come from the same files main.py reads.
# Tests never need them; the in-memory store and fake adapters are used.
_root = Path(__file__).parent
load_dotenv(_root / ".env")
load_dotenv(_root / ".env.local", override=True)
