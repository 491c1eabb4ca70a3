import click

from integram_compat.auth.session import password_hash
from integram_compat.database import init_store
from integram_compat.schema import seed_rows
from integram_compat.store import is_valid_db_name

@click.command()
@click.argument("name")
def new_db(name: str):
    """Create and seed an empty database."""
    if not is_valid_db_name(name):
        raise click.ClickException(f"Invalid database name: {name}")

    store = init_store()
    if store.exists(name):
        raise click.ClickException(f"Database {name} already exists")

    store.create(name, seed_rows(name))
    click.echo(f"Created database {name}")

@click.command()
@click.argument("user")
@click.argument("db")
@click.password_option("--password", "-p", "password", confirmation_prompt=False)
def hash_password(user: str, db: str, password: str):
    """Print the stored hash of PASSWORD for USER in DB."""
    click.echo(password_hash(user, password, db))
