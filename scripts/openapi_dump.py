# FILE: scripts/openapi_dump.py
# Usage: python scripts/openapi_dump.py [out.json]
# Builds the app in-process (in-memory store) and writes its OpenAPI document.
import json
import sys

from chaoscanvas.config import Settings
from chaoscanvas.service_http import create_app

doc = create_app(Settings()).openapi()
text = json.dumps(doc, indent=2, sort_keys=True)
if len(sys.argv) > 1:
    with open(sys.argv[1], "w", encoding="utf-8") as f:
        f.write(text + "\n")
else:
    print(text)
