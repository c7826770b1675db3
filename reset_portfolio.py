import sys

from scalper.core.config import settings
from scalper.persistence.db import DB
from scalper.persistence.state_store import StateStore

store_key = sys.argv[1] if len(sys.argv) > 1 else settings.STORE_KEY

store = StateStore(DB(settings.DB_PATH))
store.clear_portfolio(store_key)

print("RESET RESULT:", store_key, "record left =", store.load_portfolio(store_key) is not None)
