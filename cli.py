import click
import logging
import signal
import threading
import sqlalchemy.exc
from config.defaults import DEFAULT_CATEGORY_CONFIGS, DEFAULT_RETAILERS, DEFAULT_VALIDATION_RULES
from core.database.operations import init_db, SessionLocal, seed_defaults
from core.database.repository import DatabasePersistence
from core.engine import ScrapeEngine
from core.exceptions import EngineError
from tabulate import tabulate
import traceback

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s"
)
logger = logging.getLogger("pricewatch-cli")


def build_engine() -> ScrapeEngine:
    return ScrapeEngine(DatabasePersistence(SessionLocal))


def report_error(ctx, message: str, error: Exception) -> None:
    click.echo(f"{message}: {str(error)}")
    if ctx.obj.get("VERBOSE"):
        click.echo(traceback.format_exc())


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, verbose):
    """Demand-driven price scraping and validation engine."""
    # Store verbose flag and the engine factory in the Click context
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose
    ctx.obj.setdefault("ENGINE_FACTORY", build_engine)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")


def get_engine(ctx) -> ScrapeEngine:
    engine = ctx.obj.get("ENGINE")
    if engine is None:
        engine = ctx.obj["ENGINE_FACTORY"]()
        ctx.obj["ENGINE"] = engine
    return engine


@cli.command()
@click.option("--seed/--no-seed", default=True, help="Insert default retailers and rules (default: True)")
@click.pass_context
def init(ctx, seed):
    """Initialize the database."""
    try:
        init_db()
        click.echo("Database initialized!")
        if seed:
            db = SessionLocal()
            try:
                inserted = seed_defaults(db, DEFAULT_RETAILERS, DEFAULT_CATEGORY_CONFIGS, DEFAULT_VALIDATION_RULES)
            finally:
                db.close()
            click.echo(f"Seeded {inserted} configuration rows.")
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)


@cli.command()
@click.option("--workers", "-w", type=int, help="Number of worker threads (default: WORKER_COUNT)")
@click.pass_context
def run(ctx, workers):
    """Run the scrape workers until interrupted."""
    engine = get_engine(ctx)
    if workers:
        engine.pool.worker_count = workers

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    try:
        engine.start()
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)
        return

    click.echo(f"Engine running with {engine.pool.worker_count} workers. Press Ctrl+C to stop.")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        click.echo("Stopping engine...")
        clean = engine.stop()
        click.echo("Stopped." if clean else "Stopped; some in-flight scrapes were abandoned.")


@cli.command()
@click.argument("query")
@click.option(
    "--retailer",
    "-r",
    multiple=True,
    help="Retailer id to search (can be specified multiple times, default: all active)",
)
@click.option(
    "--format-type",
    "-f",
    type=click.Choice(["text", "table", "csv"]),
    default="table",
    help="Output format (default: table)",
)
@click.pass_context
def discover(ctx, query, retailer, format_type):
    """Search retailers for QUERY and register the listings found."""
    engine = get_engine(ctx)
    try:
        request_id = engine.submit_discovery_request(query, list(retailer))
        request = engine.wait_for_discovery(request_id)
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)
        return

    click.echo(f"Discovery {request.id}: {request.status.value}")
    if request.error:
        click.echo(f"Error: {request.error}")

    for retailer_id, result in request.retailer_results.items():
        if result.error:
            click.echo(f"  {retailer_id}: failed ({result.error})")
        else:
            click.echo(f"  {retailer_id}: {len(result.listing_ids)} listings")

    listings = [engine.persistence.get_listing(listing_id) for listing_id in request.listing_ids]
    listings = [listing for listing in listings if listing is not None]
    if listings:
        click.echo("\n" + format_listings(listings, format_type))


@cli.command()
@click.argument("listing_id")
@click.option("--wait", "-w", default=45.0, help="Seconds to wait for the price (default: 45)")
@click.pass_context
def scrape(ctx, listing_id, wait):
    """Scrape one listing now and print the fresh price."""
    engine = get_engine(ctx)
    try:
        engine.start()
        price = engine.request_price(listing_id, wait)
    except EngineError as e:
        report_error(ctx, "Error", e)
        return
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)
        return
    finally:
        engine.stop(grace=5.0)

    if price.available:
        click.echo(f"Price: ₹{price.price:,.2f} ({price.stock_status.value}) at {price.price_at:%Y-%m-%d %H:%M:%S}")
    else:
        click.echo(price.message.capitalize())
        if price.price is not None:
            click.echo(f"Last known price: ₹{price.price:,.2f} at {price.price_at:%Y-%m-%d %H:%M:%S}")
    task = engine.get_task(price.task_id)
    if task is not None and task.last_error:
        click.echo(f"Last error: {task.last_error}")


@cli.command()
@click.option("--retailer", "-r", help="Only listings from this retailer")
@click.option("--limit", "-l", default=50, help="Maximum number of listings (default: 50)")
@click.option(
    "--format-type",
    "-f",
    type=click.Choice(["text", "table", "csv"]),
    default="table",
    help="Output format (default: table)",
)
@click.pass_context
def listings(ctx, retailer, limit, format_type):
    """List known product listings."""
    engine = get_engine(ctx)
    try:
        found = engine.persistence.list_listings(retailer, limit)
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)
        return
    click.echo(format_listings(found, format_type))


@cli.command()
@click.argument("listing_id")
@click.option("--limit", "-l", default=20, help="Number of observations (default: 20)")
@click.option(
    "--format-type",
    "-f",
    type=click.Choice(["text", "table", "csv"]),
    default="table",
    help="Output format (default: table)",
)
@click.option("--output", "-o", type=click.Path(), help="Save results to file")
@click.pass_context
def history(ctx, listing_id, limit, format_type, output):
    """Show the price history of a listing, newest first."""
    engine = get_engine(ctx)
    try:
        listing = engine.persistence.get_listing(listing_id)
        if listing is None:
            click.echo(f"Listing {listing_id} not found.")
            return
        observations = engine.persistence.recent_observations(listing_id, limit=limit)
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)
        return

    click.echo(f"{listing.title or listing.url} ({listing.retailer_id})")
    result_output = format_observations(observations, format_type)

    # Output to file or console
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(result_output)
        click.echo(f"Results written to {output}")
    else:
        click.echo("\n" + result_output)


@cli.command()
@click.pass_context
def health(ctx):
    """Show queue depth, retailer success rates and circuit states."""
    engine = get_engine(ctx)
    try:
        engine.refresh_config()
    except sqlalchemy.exc.SQLAlchemyError as e:
        report_error(ctx, "Database error", e)
        return
    report = engine.get_engine_health()

    click.echo(f"Queue depth: {report.queue_depth}, in progress: {report.in_progress}")
    rows = [
        [
            retailer_id,
            "-" if info.success_rate is None else f"{info.success_rate:.1%}",
            info.samples,
            info.breaker_state,
        ]
        for retailer_id, info in report.retailers.items()
    ]
    click.echo(tabulate(rows, headers=["Retailer", "Success", "Samples", "Circuit"], tablefmt="grid"))
    for escalation in report.escalations:
        click.echo(f"! {escalation.at:%Y-%m-%d %H:%M} [{escalation.kind}] {escalation.retailer_id}: {escalation.detail}")


def _price(value) -> str:
    return "-" if value is None else f"₹{value:,.2f}"


def format_listings(found, format_type):
    """Format product listings based on specified format type."""
    if not found:
        return "No listings found."

    if format_type == "text":
        lines = [f"Found {len(found)} listings:"]
        for i, listing in enumerate(found, 1):
            lines.append(f"\n{i}. {listing.title or listing.url}")
            lines.append(f"   Retailer: {listing.retailer_id}")
            lines.append(f"   Price: {_price(listing.last_known_price)} ({listing.stock_status.value})")
            lines.append(f"   URL: {listing.url}")
            lines.append(f"   ID: {listing.id}")
        return "\n".join(lines)

    elif format_type == "csv":
        import csv
        from io import StringIO

        output = StringIO()
        writer = csv.writer(output)
        writer.writerow(["ID", "Retailer", "Title", "Price", "Stock", "Active", "URL"])
        for listing in found:
            writer.writerow([
                listing.id,
                listing.retailer_id,
                listing.title or "",
                "" if listing.last_known_price is None else f"{listing.last_known_price:.2f}",
                listing.stock_status.value,
                listing.is_active,
                listing.url,
            ])
        return output.getvalue()

    else:  # table format
        table_data = []
        for listing in found:
            # Truncate title if too long
            title = listing.title or listing.url
            if len(title) > 40:
                title = title[:37] + "..."
            table_data.append([
                listing.id[:8],
                listing.retailer_id,
                title,
                _price(listing.last_known_price),
                listing.stock_status.value,
                "yes" if listing.is_active else "no",
            ])
        headers = ["ID", "Retailer", "Title", "Price", "Stock", "Active"]
        return tabulate(table_data, headers=headers, tablefmt="grid")


def format_observations(observations, format_type):
    """Format price observations based on specified format type."""
    if not observations:
        return "No price history yet."

    if format_type == "text":
        lines = []
        for observation in observations:
            line = (
                f"{observation.recorded_at:%Y-%m-%d %H:%M:%S}  {_price(observation.price)}  "
                f"{observation.verdict.value} (confidence {observation.confidence:.2f})"
            )
            if observation.reasons:
                line += f"  - {'; '.join(observation.reasons)}"
            lines.append(line)
        return "\n".join(lines)

    elif format_type == "csv":
        import csv
        from io import StringIO

        output = StringIO()
        writer = csv.writer(output)
        writer.writerow(["Recorded", "Price", "Change %", "Verdict", "Confidence", "Reasons"])
        for observation in observations:
            writer.writerow([
                observation.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
                f"{observation.price:.2f}",
                "" if observation.change_percent is None else f"{observation.change_percent:.2f}",
                observation.verdict.value,
                f"{observation.confidence:.2f}",
                "; ".join(observation.reasons),
            ])
        return output.getvalue()

    else:  # table format
        table_data = [
            [
                observation.recorded_at.strftime("%Y-%m-%d %H:%M"),
                _price(observation.price),
                "-" if observation.change_percent is None else f"{observation.change_percent:+.1f}%",
                observation.verdict.value,
                f"{observation.confidence:.2f}",
            ]
            for observation in observations
        ]
        headers = ["Date", "Price", "Change", "Verdict", "Confidence"]
        return tabulate(table_data, headers=headers, tablefmt="grid")


if __name__ == "__main__":
    # This runs the Click application
    cli.main(obj={})
