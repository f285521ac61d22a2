"""
Loyalty Core entry point.
"""
import os
import sys
import traceback

print("[LoyaltyCore] ========================================")
print("[LoyaltyCore] Starting Loyalty Core v0.1.0")
print("[LoyaltyCore] ========================================")

# Default to production for container deployments
config_name = os.getenv('FLASK_ENV', 'production')
print(f"[LoyaltyCore] Config: {config_name}")
print(f"[LoyaltyCore] PORT: {os.getenv('PORT', 'not set')}")
print(f"[LoyaltyCore] DATABASE_URL: {'set' if os.getenv('DATABASE_URL') else 'NOT SET'}")

try:
    from loyalty_core import create_app
    app = create_app(config_name)
    print(f"[LoyaltyCore] App created, routes: {len(list(app.url_map.iter_rules()))}")
except Exception as e:
    print(f"[LoyaltyCore] FATAL ERROR during app creation: {e}")
    traceback.print_exc()
    sys.exit(1)

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=os.getenv('FLASK_ENV') == 'development'
    )
