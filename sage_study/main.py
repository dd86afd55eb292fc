import asyncio

from sage_study.app import AppSettings, build_runtime

__all__ = ["main"]


async def _sync_queued_reviews(settings: AppSettings) -> None:
    runtime = build_runtime(settings)
    try:
        await runtime.sync_pending()
    finally:
        await runtime.aclose()


def main() -> None:
    """Entry point: replay every queued review against the remote scheduler."""
    settings = AppSettings.from_env()
    asyncio.run(_sync_queued_reviews(settings))


if __name__ == "__main__":
    main()
