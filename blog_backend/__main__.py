import os

from blog_backend.app import create_app


def main() -> None:
    app = create_app()
    port = int(os.environ.get("PORT", "8080"))
    debug = os.environ.get("FLASK_DEBUG", "").strip().lower() in ("1", "true", "yes")
    try:
        app.run(debug=debug, port=port)
    finally:
        app.extensions["session_cache"].close()


if __name__ == "__main__":
    main()
