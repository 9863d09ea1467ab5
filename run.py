"""Convenience runner for the HaulBill back-office API."""

import uvicorn

from apps.backoffice.settings import settings


def main():
    uvicorn.run(
        "apps.backoffice.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=True,
        reload_dirs=["apps"],
    )


if __name__ == "__main__":
    main()
