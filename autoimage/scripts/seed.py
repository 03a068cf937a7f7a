from __future__ import annotations

import asyncio

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from autoimage.config import get_settings
from autoimage.db.models import CreditPackage
from autoimage.db.session import create_engine, create_sessionmaker


# title, credits, price in cents, sort order
DEFAULT_PACKAGES = [
    ('Starter Pack', 10, 999, 1),
    ('Pro Pack', 50, 3999, 2),
    ('Enterprise Pack', 200, 14999, 3),
]


async def seed_packages(sessionmaker: async_sessionmaker, currency: str) -> None:
    async with sessionmaker() as session:
        allowed_titles = {title for title, _, _, _ in DEFAULT_PACKAGES}
        for title, credits, price, order in DEFAULT_PACKAGES:
            result = await session.execute(select(CreditPackage).where(CreditPackage.title == title))
            existing = result.scalar_one_or_none()
            if existing:
                existing.credits = credits
                existing.price = price
                existing.currency = currency
                existing.active = True
                existing.sort_order = order
                continue
            session.add(
                CreditPackage(
                    title=title,
                    credits=credits,
                    price=price,
                    currency=currency,
                    active=True,
                    sort_order=order,
                )
            )
        extra_packages = await session.execute(
            select(CreditPackage).where(CreditPackage.title.not_in(allowed_titles))
        )
        for row in extra_packages.scalars().all():
            row.active = False

        await session.commit()


async def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    sessionmaker = create_sessionmaker(engine)
    await seed_packages(sessionmaker, settings.stripe_currency.lower())
    await engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == '__main__':
    run()
