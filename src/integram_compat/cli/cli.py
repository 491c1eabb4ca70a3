import click
import uvicorn
from dotenv import load_dotenv

# settings are read on import of the commands
load_dotenv()

from .admin import hash_password, new_db
from .dump import backup, csv, restore

@click.group()
def cli():
    pass

@click.command()
@click.option("--host", default="0.0.0.0")
@click.option("--port", default=8000, type=int)
def serve(host: str, port: int):
    """Run the HTTP server."""
    uvicorn.run("integram_compat.server:app", host=host, port=port, workers=1)

cli.add_command(backup,"backup")
cli.add_command(restore,"restore")
cli.add_command(csv,"csv")
cli.add_command(new_db,"new-db")
cli.add_command(hash_password,"hash-password")
cli.add_command(serve,"serve")

if __name__ == '__main__':
    cli()
