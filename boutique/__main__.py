"""
Lancement local du service checkout: `python -m boutique`.

- PORT (8000), UVICORN_RELOAD ("1"/"true"/"yes"), LOG_LEVEL ("info")
- FORWARDED_ALLOW_IPS: proxies dont les en-têtes X-Forwarded-* sont crus (IP client du rate limiting)
"""
import os
import uvicorn


def main() -> None:
    uvicorn.run(
        "boutique.asgi:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8000)),
        reload=os.environ.get("UVICORN_RELOAD", "").lower() in ("1", "true", "yes"),
        log_level=os.environ.get("LOG_LEVEL", "info"),
        proxy_headers=True,
        forwarded_allow_ips=os.environ.get("FORWARDED_ALLOW_IPS", "127.0.0.1"),
    )


if __name__ == "__main__":
    main()
