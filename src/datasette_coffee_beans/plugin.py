"""
Datasette plugin exposing the coffee bean inventory as a JSON API.

- CRUD and search over coffee beans
- One-off import of the initial JSON catalogue
- Current Bean of the Day, plus an on-demand selection trigger
- Optional in-process nightly scheduler
- HTTP Basic authentication against staff accounts
"""

import asyncio
import json
import logging
import random
import re
import sqlite3
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from datasette import Response, hookimpl
from datasette.utils.asgi import Request

from bean_of_the_day.config import PLUGIN_NAME, BotdConfig
from bean_of_the_day.importer import load_initial_data
from bean_of_the_day.models import BeanStore, PersistenceError
from bean_of_the_day.scheduler import BeanOfTheDayScheduler, local_clock
from bean_of_the_day.selector import run_selection_cycle

from .basic_auth import actor_for_account, authenticate_staff, parse_basic_auth, sync_admin_from_env

logger = logging.getLogger(__name__)

# A currency symbol followed by digits and exactly two decimals, e.g. "£10.99"
COST_PATTERN = re.compile(r"^[^\d\s]\d+(\.\d{2})$")
MAX_DESCRIPTION_LENGTH = 500

API_PREFIX = "/-/coffee-beans/"


# -----------------------------------------------------------------------------
# Plugin Configuration & State
# -----------------------------------------------------------------------------


def get_config(datasette) -> BotdConfig:
    """Service configuration from the datasette-coffee-beans plugin block."""
    return BotdConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def get_store(datasette) -> BeanStore:
    """A fresh store handle for one request."""
    config = get_config(datasette)
    return BeanStore(config.db_path, timeout=config.busy_timeout_seconds)


@dataclass
class PluginState:
    """Per-Datasette runtime state shared by the trigger route and scheduler."""

    rng: random.Random
    scheduler: BeanOfTheDayScheduler | None = None
    stop_event: asyncio.Event | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)


_states: "weakref.WeakKeyDictionary[Any, PluginState]" = weakref.WeakKeyDictionary()


def get_state(datasette) -> PluginState:
    state = _states.get(datasette)
    if state is None:
        config = get_config(datasette)
        state = PluginState(rng=random.Random(config.scheduler.random_seed))
        _states[datasette] = state
    return state


def ensure_db_exists(db_path: Path) -> None:
    """Create or upgrade the database schema. Idempotent."""
    from datasette_coffee_beans.migrations import run_migrations

    run_migrations(db_path, verbose=False)


# -----------------------------------------------------------------------------
# Request Helpers
# -----------------------------------------------------------------------------


def is_staff(request: Request) -> bool:
    """Check if the current user is staff."""
    actor = request.actor
    return actor is not None and actor.get("principal_type") == "staff"


def unauthorized() -> Response:
    return Response.json(
        {"success": False, "message": "Authentication required"},
        status=401,
        headers={"WWW-Authenticate": 'Basic realm="coffee-beans"'},
    )


def error_response(message: str, status: int) -> Response:
    return Response.json({"success": False, "message": message}, status=status)


def method_not_allowed() -> Response:
    return error_response("Method not allowed", 405)


async def read_json_body(request: Request) -> dict[str, Any]:
    """Decode a JSON object request body. Raises ValueError on bad input."""
    body = await request.post_body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def validate_bean_fields(data: dict[str, Any], partial: bool = False) -> tuple[dict, list[str]]:
    """
    Validate an insert/update payload.

    Returns (fields, errors). With partial=True, required fields may be omitted
    and empty values mean "keep the existing value".
    """
    errors = []
    fields = {}

    for key in ("name", "cost", "colour", "description", "image"):
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            errors.append(f"{key} must be a string")
            continue
        fields[key] = value.strip()

    if not partial:
        for key in ("name", "cost", "colour"):
            if not fields.get(key):
                errors.append(f"{key} is required")

    cost = fields.get("cost")
    if cost and not COST_PATTERN.match(cost):
        errors.append("cost must be a currency symbol followed by an amount, e.g. £10.99")

    if len(fields.get("description", "")) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"description can't exceed {MAX_DESCRIPTION_LENGTH} characters")

    return fields, errors


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def beans_collection(request: Request, datasette) -> Response:
    """
    GET: all beans ordered by id.
    POST: insert a bean.
    DELETE: delete every bean.
    """
    if not is_staff(request):
        return unauthorized()

    store = get_store(datasette)

    if request.method == "GET":
        try:
            beans = store.list_all()
        except sqlite3.Error:
            logger.exception("Unhandled exception occurred while trying to get all coffee beans")
            return error_response("An unexpected error occurred.", 500)
        return Response.json(
            {
                "success": True,
                "message": "Success",
                "coffee_beans": [bean.to_dict() for bean in beans],
            }
        )

    if request.method == "POST":
        try:
            data = await read_json_body(request)
        except ValueError as e:
            return error_response(str(e), 400)

        fields, errors = validate_bean_fields(data)
        if errors:
            return Response.json({"success": False, "message": "; ".join(errors)}, status=400)

        try:
            bean = store.insert_bean(**fields)
        except sqlite3.Error:
            logger.exception(f"Unhandled exception while inserting coffee bean {fields.get('name')!r}")
            return error_response("An unexpected error occurred.", 500)

        logger.info(f"Inserted coffee bean {bean.id}: {bean.name}")
        return Response.json(
            {"success": True, "message": "Success", "coffee_bean": bean.to_dict()},
            status=201,
        )

    if request.method == "DELETE":
        try:
            deleted = store.delete_all()
        except sqlite3.Error:
            logger.exception("Unhandled exception occurred while trying to delete all coffee beans")
            return error_response("Unable to delete all coffee beans.", 500)

        logger.info(f"Deleted all coffee beans ({deleted} rows)")
        return Response.json({"success": True, "message": "Success", "deleted": deleted})

    return method_not_allowed()


async def bean_detail(request: Request, datasette) -> Response:
    """
    GET: one bean.
    PUT/POST: update a bean's editable fields.
    DELETE: delete the bean.
    """
    if not is_staff(request):
        return unauthorized()

    bean_id = int(request.url_vars["bean_id"])
    store = get_store(datasette)

    if request.method == "GET":
        try:
            bean = store.get_bean(bean_id)
        except sqlite3.Error:
            logger.exception(f"Unhandled exception while getting coffee bean {bean_id}")
            return error_response("An unexpected error occurred.", 500)
        if bean is None:
            return error_response(f"Coffee bean {bean_id} not found", 404)
        return Response.json({"success": True, "message": "Success", "coffee_bean": bean.to_dict()})

    if request.method in ("PUT", "POST"):
        try:
            data = await read_json_body(request)
        except ValueError as e:
            return error_response(str(e), 400)

        fields, errors = validate_bean_fields(data, partial=True)
        if errors:
            return Response.json({"success": False, "message": "; ".join(errors)}, status=400)

        try:
            bean = store.update_bean(bean_id, **fields)
        except sqlite3.Error:
            logger.exception(f"Unhandled exception while updating coffee bean {bean_id}")
            return error_response("An unexpected error occurred.", 500)

        if bean is None:
            return error_response(f"Coffee bean {bean_id} not found", 404)
        return Response.json({"success": True, "message": "Success", "coffee_bean": bean.to_dict()})

    if request.method == "DELETE":
        try:
            deleted = store.delete_bean(bean_id)
        except sqlite3.Error:
            logger.exception(f"Unhandled exception while deleting coffee bean {bean_id}")
            return error_response(f"Unable to delete coffee bean {bean_id}.", 500)
        if not deleted:
            return error_response(f"Coffee bean {bean_id} not found", 404)
        logger.info(f"Deleted coffee bean {bean_id}")
        return Response.json({"success": True, "message": "Success"})

    return method_not_allowed()


async def search_beans(request: Request, datasette) -> Response:
    """Search beans by name, colour and/or cost substrings."""
    if not is_staff(request):
        return unauthorized()
    if request.method != "GET":
        return method_not_allowed()

    name = request.args.get("name")
    colour = request.args.get("colour")
    cost = request.args.get("cost")

    try:
        beans = get_store(datasette).search(name=name, colour=colour, cost=cost)
    except sqlite3.Error:
        logger.exception(
            f"Unhandled exception occurred while searching coffee beans: "
            f"{name} - {cost} - {colour}"
        )
        return error_response("An unexpected error occurred.", 500)

    return Response.json([bean.to_dict() for bean in beans])


async def load_initial_data_route(request: Request, datasette) -> Response:
    """Seed an empty inventory from the configured JSON file."""
    if not is_staff(request):
        return unauthorized()
    if request.method != "POST":
        return method_not_allowed()

    config = get_config(datasette)
    store = get_store(datasette)

    try:
        success = load_initial_data(store, config.initial_data_path)
        count = store.count()
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Unable to load coffee bean data: {e}")
        return Response.json({"success": False, "message": "Unable to load coffee bean data."})
    except (sqlite3.Error, PersistenceError):
        logger.exception("Unhandled exception occurred while trying to load initial data")
        return error_response("An unexpected error occurred.", 500)

    return Response.json(
        {
            "success": success,
            "message": "Success" if success else "Unable to load coffee bean data.",
            "count": count,
        }
    )


async def botd_current(request: Request, datasette) -> Response:
    """Current Bean of the Day and scheduler status."""
    if not is_staff(request):
        return unauthorized()
    if request.method != "GET":
        return method_not_allowed()

    try:
        bean = get_store(datasette).get_featured()
    except sqlite3.Error:
        logger.exception("Unhandled exception occurred while getting the Bean of the Day")
        return error_response("An unexpected error occurred.", 500)

    scheduler = get_state(datasette).scheduler
    status = None
    if scheduler is not None:
        status = {
            "next_run": scheduler.next_run.isoformat() if scheduler.next_run else None,
            "cycles_completed": scheduler.cycles_completed,
            "cycles_failed": scheduler.cycles_failed,
        }

    return Response.json(
        {
            "success": True,
            "message": "Success",
            "coffee_bean": bean.to_dict() if bean else None,
            "scheduler": status,
        }
    )


async def botd_trigger(request: Request, datasette) -> Response:
    """Run a selection cycle now, outside the nightly schedule."""
    if not is_staff(request):
        return unauthorized()
    if request.method != "POST":
        return method_not_allowed()

    store = get_store(datasette)
    config = get_config(datasette)

    try:
        outcome = run_selection_cycle(
            store,
            rng=get_state(datasette).rng,
            clock=local_clock(config.scheduler.get_timezone()),
        )
    except PersistenceError:
        logger.exception("Unhandled exception occurred while selecting Bean of the Day")
        return error_response("An unexpected error occurred.", 500)

    logger.info(f"Bean of the Day triggered by {request.actor['id']}")
    try:
        bean = store.get_featured()
    except sqlite3.Error:
        logger.exception("Unhandled exception occurred while reading the new Bean of the Day")
        return error_response("An unexpected error occurred.", 500)

    return Response.json(
        {
            "success": True,
            "message": "Success" if outcome.changed else "No eligible beans",
            "outcome": outcome.to_dict(),
            "coffee_bean": bean.to_dict() if bean else None,
        }
    )


# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------


def start_scheduler(datasette, config: BotdConfig) -> BeanOfTheDayScheduler:
    """Start the nightly scheduler as a task on the running event loop."""
    state = get_state(datasette)
    if state.scheduler is not None:
        return state.scheduler

    scheduler = BeanOfTheDayScheduler(
        lambda: BeanStore(config.db_path, timeout=config.busy_timeout_seconds),
        rng=state.rng,
        clock=local_clock(config.scheduler.get_timezone()),
        run_on_startup=config.scheduler.run_on_startup,
    )
    state.scheduler = scheduler
    state.stop_event = asyncio.Event()

    task = asyncio.get_running_loop().create_task(scheduler.run(state.stop_event))
    state.tasks.add(task)
    task.add_done_callback(state.tasks.discard)
    return scheduler


def stop_scheduler(datasette) -> None:
    """Ask the in-process scheduler to stop after its current wait."""
    state = _states.get(datasette)
    if state and state.stop_event is not None:
        state.stop_event.set()


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/-/coffee-beans/beans$", beans_collection),
        (r"^/-/coffee-beans/beans/(?P<bean_id>\d+)$", bean_detail),
        (r"^/-/coffee-beans/search$", search_beans),
        (r"^/-/coffee-beans/load-initial-data$", load_initial_data_route),
        (r"^/-/coffee-beans/botd$", botd_current),
        (r"^/-/coffee-beans/botd/trigger$", botd_trigger),
    ]


@hookimpl
def actor_from_request(datasette, request):
    """Authenticate staff from an HTTP Basic Authorization header."""
    credentials = parse_basic_auth(request.headers.get("authorization"))
    if credentials is None:
        return None

    username, password = credentials
    account = authenticate_staff(get_config(datasette).db_path, username, password)
    if account is None:
        logger.warning(f"Failed Basic auth attempt for {username!r}")
        return None
    return actor_for_account(account)


@hookimpl
def skip_csrf(datasette, scope):
    """API routes authenticate every request with Basic auth, so skip CSRF."""
    if scope.get("path", "").startswith(API_PREFIX):
        return True
    return None


@hookimpl
def startup(datasette):
    """
    Run on Datasette startup.

    Migrates the database, syncs the admin account from the environment and
    starts the nightly scheduler when enabled.
    """

    async def inner():
        config = get_config(datasette)
        ensure_db_exists(config.db_path)
        sync_admin_from_env(config.db_path)
        if config.scheduler.enabled:
            start_scheduler(datasette, config)

    return inner
