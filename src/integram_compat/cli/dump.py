"""
CLI commands for whole-table dumps.
"""

import click

from integram_compat import dump
from integram_compat.database import init_store

def _existing_store(db: str):
    store = init_store()
    if not store.exists(db):
        raise click.ClickException(f"Database {db} does not exist")
    return store

@click.command()
@click.argument("db")
@click.option("--output", "-o", "output", default=None, help="Target .zip file")
def backup(db: str, output: str):
    """Write a zipped .dmp backup of DB."""
    store = _existing_store(db)

    name = f"{db}_{dump.timestamp()}.dmp"
    output = output or f"{name}.zip"

    with open(output, "wb") as file:
        file.write(dump.zip_chunks(name, dump.backup(store, db)))

    click.echo(f"Backup of {db} written to {output}")

@click.command()
@click.argument("db")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--create", is_flag=True, default=False, help="Create DB when it does not exist")
def restore(db: str, file: str, create: bool):
    """Insert the rows of a .dmp or zipped backup into DB."""
    store = init_store()
    if not store.exists(db):
        if not create:
            raise click.ClickException(f"Database {db} does not exist")
        store.create(db)

    with open(file, "rb") as source:
        text = dump.read_dump_archive(source.read())

    count = dump.restore(store, db, text)
    click.echo(f"Restored {count} rows into {db}")

@click.command()
@click.argument("db")
@click.option("--output", "-o", "output", default=None, help="Target .csv file")
def csv(db: str, output: str):
    """Export every independent type of DB as CSV."""
    store = _existing_store(db)
    output = output or f"{db}_all_{dump.timestamp()}.csv"

    with open(output, "w", encoding="utf-8", newline="") as file:
        for chunk in dump.csv_all(store, db):
            file.write(chunk)

    click.echo(f"CSV export of {db} written to {output}")
