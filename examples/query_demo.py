"""
Demonstration of the read-side queries over the indexed DAO data.

Shows what the API layer serves: global stats, the DAO list, a DAO's
proposals and members, the activity feed, and the indexer checkpoint.

Requirements:
    - PostgreSQL must be running and reachable with the DB_* settings
    - The indexer has run at least once (python scripts/run_indexer.py --once)

Run:
    python examples/query_demo.py
"""

from src.shared.db import ALLOWED_TABLES, export_to_csv, get_db
from src.shared.db.queries import (
    get_checkpoint,
    global_stats,
    list_activity,
    list_daos,
    list_members,
    list_proposals,
)


def demo_stats():
    """Demo: Counts across the whole store."""
    print("\n=== Global Stats ===")

    with get_db() as session:
        stats = global_stats(session)
        checkpoint = get_checkpoint(session)

    for key, value in stats.items():
        print(f"  {key}: {value}")
    print(f"✓ Indexed up to block {checkpoint}")


def demo_daos():
    """Demo: Newest DAOs with their proposals and members."""
    print("\n=== DAOs ===")

    with get_db() as session:
        page = list_daos(session, page=0, limit=5)
        print(f"✓ {page['total']} DAOs indexed, showing {len(page['daos'])}")

        for dao in page["daos"]:
            print(f"\n  {dao['name']} ({dao['address']})")
            for proposal in list_proposals(session, dao["address"], limit=3)["proposals"]:
                print(
                    f"    #{proposal['proposal_id']} {proposal['title']!r} [{proposal['state']}] "
                    f"for={proposal['for_votes']} against={proposal['against_votes']} "
                    f"abstain={proposal['abstain_votes']}"
                )
            members = list_members(session, dao["address"])
            print(f"    {len(members)} members")


def demo_activity():
    """Demo: Activity feed, newest first."""
    print("\n=== Recent Activity ===")

    with get_db() as session:
        for item in list_activity(session, limit=10):
            print(f"  {item['timestamp']} {item['dao']['name']}: {item['type']} by {item['actor']}")


def demo_csv_export():
    """Demo: Export to CSV with SQL injection protection."""
    print("\n=== CSV Export (SQL Injection Protected) ===")

    rows = export_to_csv("proposals", "demo_proposals.csv")
    print(f"✓ Exported {rows} proposals to demo_proposals.csv")

    print(f"✓ Whitelisted tables: {', '.join(sorted(ALLOWED_TABLES))}")

    try:
        export_to_csv("proposals; DROP TABLE proposals; --", "malicious.csv")
        print("✗ SQL injection was NOT blocked (BUG!)")
    except ValueError as e:
        print(f"✓ SQL injection blocked: {e}")


def main():
    """Run all query demonstrations."""
    print("=" * 70)
    print("DAO Indexer Query Demo")
    print("=" * 70)

    try:
        demo_stats()
        demo_daos()
        demo_activity()
        demo_csv_export()

        print("\n" + "=" * 70)
        print("✓ Demo completed successfully")
        print("=" * 70)

    except Exception as e:
        print(f"\n✗ Demo failed: {e}")
        print("\nMake sure PostgreSQL is running and the indexer has run:")
        print("  python scripts/run_indexer.py --once")
        raise


if __name__ == "__main__":
    main()
