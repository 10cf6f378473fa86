from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_ledger.api import create_app

# Serverless entry point; the platform mounts the app under /api
app = create_app(root_path="/api")

handler = Mangum(app)
