#!/usr/bin/env python3
"""
Interactive demo of the exam ranking engine.

This script walks through the core flows against a local SQLite file and the
in-process ranking cache (no PostgreSQL or Redis needed):
1. Creating test users
2. Simulating graded test submissions across difficulties
3. Querying the global points leaderboard and a course leaderboard
4. Showing players around one user
5. Abandonment deductions clamped at zero
6. Cache expiry followed by rebuild-on-miss

Run with: python scripts/demo.py
"""

import asyncio
import os
import random
import sys

# Local file database and in-process cache unless told otherwise
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./exam_ranking_demo.db")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from exam_ranking.models import Difficulty, GradedOutcome, Scope, resolve_difficulty
from exam_ranking.services.rank_service import RankQueryService
from exam_ranking.storage.database import drop_db, engine, init_db
from exam_ranking.storage.ranking_cache import InMemoryRankingCache
from exam_ranking.storage.result_store import ResultStore

console = Console()

COURSE = "python101"
FIRST_NAMES = ["Ada", "Linus", "Grace", "Guido", "Margaret", "Dennis", "Barbara", "Ken"]
LAST_NAMES = ["Byte", "Stack", "Heap", "Loop", "Lambda", "Vector", "Kernel", "Socket"]


def leaderboard_table(title: str, rows, performance: bool = False) -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Rank", justify="right", style="cyan")
    table.add_column("Player")
    if performance:
        table.add_column("Score %", justify="right")
        table.add_column("Time (s)", justify="right")
    else:
        table.add_column("Points", justify="right", style="green")
    table.add_column("Tests", justify="right")

    for row in rows:
        name = f"{row.display_name} (@{row.username})"
        if row.is_current_user:
            name = f"[bold yellow]{name} ⭐ YOU[/bold yellow]"
        if performance:
            table.add_row(f"#{row.rank}", name, str(row.percentage), str(row.time_taken), str(row.tests_completed))
        else:
            table.add_row(f"#{row.rank}", name, str(row.points), str(row.tests_completed))
    return table


async def create_users(store: ResultStore, count: int = 12) -> list[str]:
    console.print("\n[bold]Step 1: Creating Test Users[/bold]")
    user_ids = []
    for i in range(count):
        user_id = f"user-{i:03d}"
        first, last = random.choice(FIRST_NAMES), random.choice(LAST_NAMES)
        await store.create_user(user_id, f"{first.lower()}{last.lower()}{i}", f"{first} {last}")
        user_ids.append(user_id)
    console.print(f"[green]✓[/green] Created {len(user_ids)} users")
    return user_ids


def random_outcome(user_id: str) -> GradedOutcome:
    level = random.choice(list(Difficulty))
    total = random.choice([10, 15, 20])
    correct = random.randint(total // 3, total)
    wrong = random.randint(0, total - correct)
    max_time = total * 60
    return GradedOutcome(
        user_id=user_id,
        course_id=COURSE,
        difficulty=resolve_difficulty(level),
        total_questions=total,
        correct_answers=correct,
        wrong_answers=wrong,
        unanswered=total - correct - wrong,
        total_score=correct,
        max_possible_score=total,
        time_taken=random.randint(max_time // 4, max_time),
        max_time=max_time,
    )


async def simulate_submissions(service: RankQueryService, user_ids: list[str], per_user: int = 4):
    console.print("\n[bold]Step 2: Simulating Test Submissions[/bold]")
    earned = 0
    for _ in range(per_user):
        for user_id in user_ids:
            result = await service.record_submission(random_outcome(user_id))
            earned += result.points_earned
    console.print(
        f"[green]✓[/green] Recorded {per_user * len(user_ids)} submissions, "
        f"{earned} points handed out"
    )


async def show_leaderboards(service: RankQueryService):
    console.print("\n[bold]Step 3: Leaderboards[/bold]")
    console.print(leaderboard_table("🌍 Global Points", await service.get_leaderboard(Scope.global_scope(), 10)))
    console.print(
        leaderboard_table(
            f"📘 {COURSE} (all difficulties)",
            await service.get_leaderboard(Scope.course(COURSE), 10),
            performance=True,
        )
    )


async def show_surrounding(service: RankQueryService, user_id: str):
    console.print(f"\n[bold]Step 4: Players Surrounding {user_id} (±2 positions)[/bold]")
    rows = await service.get_surrounding(user_id, Scope.global_scope(), offset=2)
    console.print(leaderboard_table("Around you", rows))


async def show_abandonment(service: RankQueryService, store: ResultStore):
    console.print("\n[bold]Step 5: Abandonment Deductions[/bold]")
    await store.create_user("quitter", "quitter", "Quick Quitter")
    await service.points_engine.apply_delta("quitter", 15, "demo_grant")

    table = Table(box=box.SIMPLE)
    table.add_column("Action")
    table.add_column("Deducted", justify="right", style="red")
    table.add_column("Balance", justify="right", style="green")
    table.add_row("start", "", "15")
    for _ in range(3):
        result = await service.record_submission(
            GradedOutcome(
                user_id="quitter",
                course_id=COURSE,
                difficulty=resolve_difficulty(Difficulty.HARD),
                total_questions=0,
                was_abandoned=True,
                abandoned_at_difficulty=Difficulty.HARD,
            )
        )
        table.add_row("abandon at Hard", str(result.points_deducted), str(result.balance))
    console.print(table)
    console.print("[dim]Balances are clamped at zero, never negative.[/dim]")


async def show_rebuild(service: RankQueryService, cache: InMemoryRankingCache):
    console.print("\n[bold]Step 6: Cache Expiry and Rebuild-on-Miss[/bold]")
    scope = Scope.course(COURSE)
    before = [row.user_id for row in await service.get_leaderboard(scope, 3)]
    cache.expire_now(scope)
    console.print(f"[yellow]→[/yellow] Scope {scope} expired (exists: {await cache.scope_exists(scope)})")
    after = [row.user_id for row in await service.get_leaderboard(scope, 3)]
    status = "[green]identical[/green]" if before == after else "[red]different[/red]"
    console.print(f"[green]✓[/green] Top 3 before {before}, after rebuild {after}: {status}")


async def main():
    console.print(
        Panel.fit(
            "[bold cyan]Exam Ranking Engine[/bold cyan]\n\n"
            "Dual-store leaderboards: SQL is the source of truth,\n"
            "sorted sets serve ranks and rebuild themselves on a miss.\n\n"
            "[dim]Press Ctrl+C to exit at any time[/dim]",
            title="🏆 Leaderboards",
            border_style="cyan",
        )
    )

    await drop_db()
    await init_db()

    store = ResultStore()
    cache = InMemoryRankingCache()
    service = RankQueryService(store, cache)

    try:
        user_ids = await create_users(store)
        await simulate_submissions(service, user_ids)
        await show_leaderboards(service)
        await show_surrounding(service, random.choice(user_ids))
        await show_abandonment(service, store)
        await show_rebuild(service, cache)
    finally:
        await engine.dispose()

    console.print("\n[bold green]Demo complete![/bold green]")


if __name__ == "__main__":
    asyncio.run(main())
