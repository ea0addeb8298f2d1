from __future__ import annotations

from typing import Any, Optional
from pathlib import Path
import json
import os

import typer
from rich.console import Console
from rich.table import Table
import httpx


app = typer.Typer()
console = Console()
trace_console = Console(stderr=True)


def _service() -> tuple[str, dict[str, str]]:
    base_url = os.getenv("ITINERARY_SERVICE_URL", "http://localhost:3001").rstrip("/")
    headers = {"Content-Type": "application/json"}
    api_key = os.getenv("SERVICE_API_KEY")
    if api_key:
        headers["x-api-key"] = api_key
    return base_url, headers


def build_request(
    destination: str,
    start_date: str,
    end_date: str,
    budget: float,
    currency: str,
    per_person: bool,
    adults: int,
    children: int,
    infants: int,
    interests: list[str],
    pace: str,
    accommodation: str,
    transport: str,
    accessible: bool,
    diet: list[str],
    special_requests: str,
) -> dict[str, Any]:
    return {
        "destination": destination,
        "start_date": start_date,
        "end_date": end_date,
        "budget": {"amount": budget, "currency": currency.upper(),
                   "range": "per-person" if per_person else "total"},
        "travelers": {"adults": adults, "children": children, "infants": infants},
        "interests": interests,
        "preferences": {
            "pace": pace,
            "accommodation_type": accommodation,
            "transportation": transport,
            "accessibility": accessible,
            "dietary_restrictions": diet,
            "special_requests": special_requests,
        },
    }


def render_markdown(result: dict[str, Any]) -> str:
    itinerary = result["itinerary"]["itinerary"]
    estimate = itinerary["totalBudgetEstimate"]
    metadata = result["metadata"]
    lines = [
        f"# {itinerary['destination']} ({itinerary['duration']} days)",
        "",
        f"Estimated total: {estimate['amount']:.2f} {estimate['currency']}  ",
        f"Quality: {metadata['quality']} (accuracy {metadata['estimated_accuracy']}%), "
        f"source: {metadata['generation_method']}",
    ]
    for day in itinerary["days"]:
        lines += ["", f"## Day {day['day']} - {day['date']}: {day['theme']}", ""]
        for activity in day["activities"]:
            price = activity["pricing"]
            cost = "free" if price["priceType"] == "free" else f"{price['amount']:.2f} {price['currency']}"
            lines.append(
                f"- **{activity['startTime']}-{activity['endTime']}** {activity['name']} "
                f"({activity['type']}, {cost})"
            )
    if itinerary.get("generalTips"):
        lines += ["", "## Tips", ""] + [f"- {tip}" for tip in itinerary["generalTips"]]
    if result.get("warnings"):
        lines += ["", "## Warnings", ""] + [f"- {w}" for w in result["warnings"]]
    return "\n".join(lines) + "\n"


def _print_result(result: dict[str, Any]) -> None:
    itinerary = result["itinerary"]["itinerary"]
    for day in itinerary["days"]:
        table = Table(title=f"Day {day['day']} · {day['date']} · {day['theme']}")
        table.add_column("Time")
        table.add_column("Activity")
        table.add_column("Type")
        table.add_column("Price", justify="right")
        for activity in day["activities"]:
            price = activity["pricing"]
            table.add_row(
                f"{activity['startTime']}-{activity['endTime']}",
                activity["name"],
                activity["type"],
                "free" if price["priceType"] == "free" else f"{price['amount']:.2f} {price['currency']}",
            )
        console.print(table)
    estimate = itinerary["totalBudgetEstimate"]
    console.print(f"Estimated total: {estimate['amount']:.2f} {estimate['currency']}", style="bold")
    for warning in result.get("warnings", []):
        trace_console.print(f"warning: {warning}", style="yellow")
    perf = result["performance"]
    trace_console.print(
        f"[trace] {result['metadata']['generation_method']} -> {result['metadata']['quality']} "
        f"({perf['total_time_ms']:.2f} ms, cache_hit={perf['cache_hit']})",
        style="dim",
    )


def _post(path: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
    base_url, headers = _service()
    try:
        resp = httpx.post(f"{base_url}{path}", json=payload, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        trace_console.print(f"Request failed: {e}", style="bold red")
        raise typer.Exit(code=1)
    if resp.status_code != 200:
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = resp.text
        trace_console.print(f"Request failed ({resp.status_code}): {json.dumps(detail)}", style="bold red")
        raise typer.Exit(code=1)
    return resp.json()


@app.command()
def generate(
    destination: str = typer.Argument(..., help="Where to go, e.g. 'Paris, France'."),
    start_date: str = typer.Argument(..., help="First day of the trip (YYYY-MM-DD)."),
    end_date: str = typer.Argument(..., help="Last day of the trip (YYYY-MM-DD)."),
    budget: float = typer.Option(..., "--budget", "-b", help="Budget amount."),
    currency: str = typer.Option("USD", "--currency", "-c"),
    per_person: bool = typer.Option(False, "--per-person", help="Budget is per traveler, not for the group."),
    adults: int = typer.Option(1, "--adults"),
    children: int = typer.Option(0, "--children"),
    infants: int = typer.Option(0, "--infants"),
    interests: Optional[list[str]] = typer.Option(None, "--interest", "-i", help="Repeat for several interests."),
    pace: str = typer.Option("moderate", "--pace"),
    accommodation: str = typer.Option("mid-range", "--accommodation"),
    transport: str = typer.Option("public", "--transport"),
    accessible: bool = typer.Option(False, "--accessible"),
    diet: Optional[list[str]] = typer.Option(None, "--diet"),
    special_requests: str = typer.Option("", "--request"),
    quick: bool = typer.Option(False, "--quick", help="Faster, less detailed itinerary."),
    no_cache: bool = typer.Option(False, "--no-cache"),
    model: Optional[str] = typer.Option(None, "--model"),
    timeout: float = typer.Option(200.0, "--timeout", help="Seconds to wait for the service."),
    output_file: Optional[Path] = typer.Option(None, "--output", "-o", help="Save Markdown to file."),
    json_output: bool = typer.Option(False, "--json", help="Print the raw JSON result."),
) -> None:
    """Generate an itinerary through the service."""
    payload = {
        "request": build_request(destination, start_date, end_date, budget, currency, per_person, adults,
                                 children, infants, interests or ["culture"], pace, accommodation, transport,
                                 accessible, diet or [], special_requests),
        "options": {"use_cache": not no_cache, "prioritize_speed": quick, "model": model},
    }
    with console.status("Planning your trip..."):
        result = _post("/itineraries/generate", payload, timeout)

    if json_output:
        console.print_json(json.dumps(result))
    else:
        _print_result(result)

    if output_file:
        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            output_file.write_text(render_markdown(result), encoding="utf-8")
            console.print(f"\nSaved itinerary to {output_file}", style="green")
        except OSError as e:
            trace_console.print(f"Failed to write file: {e}", style="bold red")


@app.command("budget-check")
def budget_check(
    destination: str = typer.Argument(...),
    start_date: str = typer.Argument(...),
    end_date: str = typer.Argument(...),
    budget: float = typer.Option(..., "--budget", "-b"),
    currency: str = typer.Option("USD", "--currency", "-c"),
    per_person: bool = typer.Option(False, "--per-person"),
    adults: int = typer.Option(1, "--adults"),
    children: int = typer.Option(0, "--children"),
    accommodation: str = typer.Option("mid-range", "--accommodation"),
    interests: Optional[list[str]] = typer.Option(None, "--interest", "-i"),
) -> None:
    """Compare a budget with the typical cost of the trip."""
    payload = build_request(destination, start_date, end_date, budget, currency, per_person, adults, children,
                            0, interests or ["culture"], "moderate", accommodation, "public", False, [], "")
    check = _post("/itineraries/budget-check", payload, 30.0)
    style = "green" if check["is_realistic"] else "yellow"
    console.print(
        f"Typical cost {check['estimate']['total']:.0f} {check['estimate']['currency']}, "
        f"your budget {check['user_budget']:.0f} ({check['difference_percentage']:+.1f}%)",
        style=style,
    )
    for tip in check["recommendations"]:
        console.print(f"- {tip}")


@app.command()
def health() -> None:
    """Show service health."""
    base_url, headers = _service()
    try:
        resp = httpx.get(f"{base_url}/health", headers=headers, timeout=30)
    except httpx.HTTPError as e:
        trace_console.print(f"Request failed: {e}", style="bold red")
        raise typer.Exit(code=1)
    console.print_json(resp.text)
    if resp.status_code != 200:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
