from __future__ import annotations
import os
from barbershop import create_app

def main() -> None:
    flask_app = create_app()

    print("\n=== ROUTES ===")
    for rule in sorted(flask_app.url_map.iter_rules(), key=lambda x: x.rule):
        methods = ",".join(sorted(rule.methods - {"HEAD", "OPTIONS"}))
        print(f"{methods:<12} {rule.rule}")
    print("==============\n")

    debug_enabled = os.environ.get("FLASK_DEBUG", "0") in {"1", "true", "True"}
    try:
        # Threaded so open queue streams do not block other requests.
        flask_app.run(
            host="0.0.0.0",
            port=int(os.environ.get("PORT", 5000)),
            debug=debug_enabled,
            threaded=True,
        )
    finally:
        flask_app.extensions["queue_broadcaster"].close()

if __name__ == "__main__":
    main()
