# kvledger/cli/main.py
"""
CLI for issuing, signing, committing, inspecting and verifying signed KV updates.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kvledger.config import Settings, get_settings
from kvledger.core.errors import KVError, ScopeNotFound
from kvledger.crypto.keys import AvatarKeyPair
from kvledger.store import KVStore
from kvledger.telemetry import setup_logging
from kvledger.verify.auditor import ChainAuditor

app = typer.Typer(
    name="kvledger",
    help="Issue, sign, commit and verify signature-gated KV updates",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def resolve_settings(ctx: typer.Context, db_flag: Optional[Path] = None) -> Settings:
    """Resolve storage in this order:
    1. --db flag (on the command, then on the app)
    2. KV_STORAGE_URI environment variable
    3. Default: ~/.kvledger/kv.db
    """
    db = db_flag or (ctx.obj or {}).get("db")
    if db:
        return get_settings(storage_uri=f"sqlite://{db.resolve()}")
    return get_settings()


def require_existing_db(settings: Settings) -> None:
    if not settings.storage_uri.startswith("sqlite://"):
        return
    path = Path(settings.storage_uri[len("sqlite://"):]).expanduser()
    if str(path) != ":memory:" and not path.exists():
        console.print(f"[red]Database file not found: {escape(str(path))}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Run `kvledger request` + `kvledger commit` first (creates/populates DB)")
        console.print("  • Set env var: export KV_STORAGE_URI=sqlite:///path/to/kv.db")
        console.print("  • Or use --db: kvledger show <avatar> --db /custom/path.db")
        raise typer.Exit(1)


def open_store(settings: Settings) -> KVStore:
    try:
        return KVStore.from_settings(settings)
    except (KVError, ValueError) as e:
        console.print(f"[red]Failed to open store: {escape(str(e))}[/]")
        raise typer.Exit(1)


def fail(e: KVError) -> None:
    console.print(f"[red]✗ {e.code}: {escape(e.message)}[/]")
    if e.retryable:
        console.print("[yellow]  Retry: request a new challenge against the current head.[/]")
    raise typer.Exit(1)


def load_patch(patch: Optional[str], patch_file: Optional[Path]) -> Dict[str, Any]:
    if patch_file is not None:
        patch = patch_file.read_text(encoding="utf-8")
    if patch is None:
        console.print("[red]Provide a patch with --patch or --patch-file[/]")
        raise typer.Exit(1)
    try:
        return json.loads(patch)
    except json.JSONDecodeError as e:
        console.print(f"[red]Patch is not valid JSON: {escape(str(e))}[/]")
        raise typer.Exit(1)


def emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides KV_STORAGE_URI env var)",
    ),
):
    """Manage signature-gated avatar content."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    ctx.obj = {"db": db}


@app.command()
def keygen(
    curve: str = typer.Option("secp256k1", "--curve", help="Elliptic curve for the new key"),
):
    """Generate an avatar keypair (client side; the server never needs the private key)."""
    try:
        pair = AvatarKeyPair.generate(curve=curve)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)
    emit_json({
        "private_key": pair.private_key_hex(),
        "avatar": pair.public_key_hex(),
        "avatar_compressed": pair.public_key_hex(compressed=True),
    })


@app.command()
def sign(
    payload: str = typer.Argument(..., help="sign_payload string returned by `request`"),
    key: str = typer.Option(..., "--key", "-k", help="Avatar private key (hex)"),
    curve: str = typer.Option("secp256k1", "--curve"),
    hash: str = typer.Option("sha256", "--hash"),
):
    """Sign a payload with an avatar private key; prints base64."""
    try:
        pair = AvatarKeyPair.from_private_hex(key, curve=curve, hash=hash)
    except ValueError as e:
        console.print(f"[red]Invalid private key: {escape(str(e))}[/]")
        raise typer.Exit(1)
    typer.echo(pair.sign_b64(payload.encode("utf-8")))


@app.command()
def request(
    ctx: typer.Context,
    avatar: str = typer.Argument(..., help="Avatar public key (hex, 0x optional)"),
    platform: str = typer.Argument(...),
    identity: str = typer.Argument(...),
    patch: Optional[str] = typer.Option(None, "--patch", "-p", help="Merge patch as JSON"),
    patch_file: Optional[Path] = typer.Option(None, "--patch-file", help="Read merge patch from file"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Issue a challenge for a patch; prints uuid, created_at and sign_payload."""
    body = {
        "avatar": avatar,
        "platform": platform,
        "identity": identity,
        "patch": load_patch(patch, patch_file),
    }
    with open_store(resolve_settings(ctx, db)) as store:
        try:
            emit_json(store.handle_request_update(body))
        except KVError as e:
            fail(e)


@app.command()
def commit(
    ctx: typer.Context,
    avatar: str = typer.Argument(...),
    platform: str = typer.Argument(...),
    identity: str = typer.Argument(...),
    uuid: str = typer.Option(..., "--uuid", help="Challenge uuid"),
    created_at: int = typer.Option(..., "--created-at", help="Challenge created_at"),
    signature: str = typer.Option(..., "--signature", "-s", help="Base64 signature over sign_payload"),
    patch: Optional[str] = typer.Option(None, "--patch", "-p"),
    patch_file: Optional[Path] = typer.Option(None, "--patch-file"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Commit a signed patch; prints the avatar's full content."""
    body = {
        "avatar": avatar,
        "platform": platform,
        "identity": identity,
        "uuid": uuid,
        "created_at": created_at,
        "signature": signature,
        "patch": load_patch(patch, patch_file),
    }
    with open_store(resolve_settings(ctx, db)) as store:
        try:
            emit_json(store.handle_commit_update(body))
        except KVError as e:
            fail(e)


@app.command()
def show(
    ctx: typer.Context,
    avatar: str = typer.Argument(..., help="Avatar public key"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show everything stored under an avatar."""
    settings = resolve_settings(ctx, db)
    require_existing_db(settings)
    with open_store(settings) as store:
        try:
            view = store.query_avatar(avatar)
        except ScopeNotFound:
            console.print("[yellow]No content found for this avatar.[/]")
            raise typer.Exit(0)
        except KVError as e:
            fail(e)
    emit_json(view.to_dict())


@app.command()
def lookup(
    ctx: typer.Context,
    platform: str = typer.Argument(...),
    identity: str = typer.Argument(...),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Find content by platform + identity (any avatar)."""
    settings = resolve_settings(ctx, db)
    require_existing_db(settings)
    with open_store(settings) as store:
        try:
            result = store.handle_query_proof(platform, identity)
        except KVError as e:
            fail(e)
    if not result["values"]:
        console.print(f"[yellow]No content found for {escape(platform)}:{escape(identity)}[/]")
        return
    emit_json(result)


@app.command()
def scopes(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """List all scopes with entry counts and last update."""
    settings = resolve_settings(ctx, db)
    require_existing_db(settings)
    with open_store(settings) as store:
        try:
            rows = []
            for scope in store.storage.list_scopes():
                chain = store.ledger.history(scope)
                rows.append((scope, len(chain), chain[-1].created_at if chain else None))
        except KVError as e:
            fail(e)

    if not rows:
        console.print("[yellow]No scopes found in database.[/]")
        console.print("  (DB exists but no committed updates yet)")
        return

    table = Table(title="Stored Scopes")
    table.add_column("Avatar", overflow="fold")
    table.add_column("Platform")
    table.add_column("Identity", overflow="fold")
    table.add_column("Entries")
    table.add_column("Last Update")
    for scope, count, last in rows:
        table.add_row(scope.avatar, scope.platform, scope.identity, str(count), str(last or "—"))
    console.print(table)


@app.command()
def history(
    ctx: typer.Context,
    avatar: str = typer.Argument(...),
    platform: str = typer.Argument(...),
    identity: str = typer.Argument(...),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent entries to show"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show the most recent ledger entries for a scope."""
    settings = resolve_settings(ctx, db)
    require_existing_db(settings)
    with open_store(settings) as store:
        try:
            entries = store.ledger.history(store.scope(avatar, platform, identity))
        except KVError as e:
            fail(e)

    if not entries:
        console.print(f"[yellow]No entries found for {escape(platform)}:{escape(identity)}[/]")
        return

    for entry in entries[-limit:]:
        console.print(f"[bold cyan]{entry.sequence:4d} | {entry.created_at} | {entry.uuid}[/]")
        patch = json.dumps(entry.patch, ensure_ascii=False)
        console.print("  " + escape(patch[:160] + ("..." if len(patch) > 160 else "")))
        console.print("  " + "─" * 90)


@app.command()
def verify(
    ctx: typer.Context,
    avatar: str = typer.Argument(...),
    platform: str = typer.Argument(...),
    identity: str = typer.Argument(...),
    repair: bool = typer.Option(False, "--repair", help="Rewrite cached content from the chain if it drifted"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Verify a scope's chain: prev links, payloads, signatures and cached content."""
    settings = resolve_settings(ctx, db)
    require_existing_db(settings)
    with open_store(settings) as store:
        try:
            scope = store.scope(avatar, platform, identity)
            entries = store.ledger.history(scope)
        except KVError as e:
            fail(e)

        if not entries:
            console.print(f"[red]✗ No entries found for {escape(platform)}:{escape(identity)}[/]")
            raise typer.Exit(1)

        result = ChainAuditor(store.verifier).audit_ledger(scope, store.ledger)
        only_content = bool(result.failures) and all(f.category == "content" for f in result.failures)
        if repair and only_content:
            store.ledger.rebuild(scope, repair=True)
            console.print("[yellow]Cached content rebuilt from the chain.[/]")
            result = ChainAuditor(store.verifier).audit_ledger(scope, store.ledger)

    if result.is_valid:
        console.print(f"[green]✓ Scope {escape(platform)}:{escape(identity)} is valid[/]")
        console.print(f"  {result.message}")
    else:
        console.print(f"[red]✗ Verification failed for {escape(platform)}:{escape(identity)}[/]")
        for failure in result.failures:
            console.print(f"  • [{failure.index}] {failure.category}: {escape(failure.message)}")
        raise typer.Exit(1)


@app.command()
def export(
    ctx: typer.Context,
    avatar: str = typer.Argument(...),
    platform: str = typer.Argument(...),
    identity: str = typer.Argument(...),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: <platform>-<identity>.jsonl)"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Export a scope's ledger as JSONL (one signed entry per line)."""
    settings = resolve_settings(ctx, db)
    require_existing_db(settings)
    with open_store(settings) as store:
        try:
            entries = store.ledger.history(store.scope(avatar, platform, identity))
        except KVError as e:
            fail(e)

    if not entries:
        console.print(f"[yellow]No entries found for {escape(platform)}:{escape(identity)}[/]")
        raise typer.Exit(0)

    out_path = output or Path(f"{platform}-{identity[:16]}.jsonl")
    with open(out_path, "w", encoding="utf-8") as f:
        for entry in entries:
            json.dump(entry.to_dict(), f, separators=(",", ":"), ensure_ascii=False)
            f.write("\n")

    console.print(f"[green]Exported {len(entries)} entries to {escape(str(out_path))}[/]")
    console.print("Format: JSONL — one signed ledger entry per line")


if __name__ == "__main__":
    app()
