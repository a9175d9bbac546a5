import os

import click
import yaml
from flask import current_app as app
from flask.cli import with_appcontext

from ots_federation.defaultconfig import DefaultConfig
from ots_federation.extensions import logger
from ots_federation.federation.errors import FederationError


@click.group()
def federation():
    """Manage the config file and outbound federations"""


def default_config() -> dict:
    conf = {}
    for option in DefaultConfig.__dict__:
        if option.isupper():
            conf[option] = DefaultConfig.__dict__[option]
    return conf


def write_config(path: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as config:
        config.write(yaml.safe_dump(default_config()))


@federation.command()
@click.option("--overwrite", is_flag=True)
@with_appcontext
def generate_config(overwrite):
    config_path = os.path.join(app.config.get("OTS_DATA_FOLDER"), "config.yml")

    if os.path.exists(config_path) and not overwrite:
        logger.warning("config.yml already exists")
        return

    logger.info("Creating config.yml")
    write_config(config_path)


@federation.command("list")
@with_appcontext
def list_federations():
    page = 1
    while True:
        federations = app.federation_registry.list(page=page, per_page=50)
        for peer in federations['results']:
            click.echo(f"{peer['id']:>4}  {peer['name']:<24} {peer['protocol']}://{peer['address']}:{peer['port']:<6} "
                       f"{'enabled' if peer['enabled'] else 'disabled':<9} {peer['connection_status']:<13} "
                       f"sent={peer['messages_sent']} failed={peer['messages_failed']}")
        if page >= federations['num_pages']:
            break
        page += 1


@federation.command()
@click.argument("federation_id", type=int)
@with_appcontext
def toggle(federation_id):
    try:
        enabled = app.federation_registry.toggle(federation_id)
    except FederationError as e:
        raise click.ClickException(str(e))
    click.echo(f"Federation {federation_id} is now {'enabled' if enabled else 'disabled'}")
