#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    # Set dummy env vars so the settings module loads outside a deployment
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
    os.environ.setdefault("API_BASE_URL", "http://localhost:5000")

    import cvpay.main
    print("Import cvpay.main: OK")

    from cvpay.gateway.adapter import build_gateway
    from cvpay.remote.client import PaymentServiceClient, build_http_client
    from cvpay.settings import settings

    gateway = build_gateway(settings.GATEWAY_MODE, PaymentServiceClient(build_http_client()))
    print(f"Gateway mode {gateway.name}: OK")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
