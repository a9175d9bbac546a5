from gevent import monkey
monkey.patch_all()

import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler

import colorlog
import flask_wtf
import yaml
from flask import Flask
from flask_cors import CORS
from flask_security import Security, SQLAlchemyUserDatastore, hash_password, uia_username_mapper
from flask_security.models import fsqla_v3
from werkzeug.middleware.proxy_fix import ProxyFix

import ots_federation
from ots_federation.defaultconfig import DefaultConfig
from ots_federation.extensions import logger, db, socketio
from ots_federation.federation.consumer import FederationConsumer
from ots_federation.federation.credential_store import CredentialStore
from ots_federation.federation.peer_registry import PeerRegistry
from ots_federation.federation.router import MessageRouter
from ots_federation.federation.supervisor import ConnectionSupervisor
from ots_federation.models.Federation import Federation  # noqa: F401
from ots_federation.models.WebAuthn import WebAuthn
from ots_federation.models.role import Role
from ots_federation.models.user import User


def init_extensions(app):
    db.init_app(app)

    logger.info(f"OTS Federation {ots_federation.__version__}")
    logger.info("Loading the database...")
    with app.app_context():
        db.create_all()

    identity_attributes = [{"username": {"mapper": uia_username_mapper, "case_insensitive": True}}]
    app.config.update({"SECURITY_USER_IDENTITY_ATTRIBUTES": identity_attributes})

    CORS(app, resources={r"/api/*": {"origins": "*"}}, supports_credentials=True)
    flask_wtf.CSRFProtect(app)

    socketio_logger = False
    if app.config.get("DEBUG"):
        socketio_logger = logger
    if app.config.get("OTS_SOCKETIO_MESSAGE_QUEUE"):
        socketio.init_app(app, logger=socketio_logger, ping_timeout=1,
                          message_queue=app.config.get("OTS_SOCKETIO_MESSAGE_QUEUE"))
    else:
        socketio.init_app(app, logger=socketio_logger, ping_timeout=1)

    user_datastore = SQLAlchemyUserDatastore(db, User, Role, WebAuthn)
    app.security = Security(app, user_datastore)

    credential_store = CredentialStore.from_config(app.config)
    app.federation_registry = PeerRegistry(app, credential_store)
    app.federation_supervisor = ConnectionSupervisor(app, app.federation_registry)
    app.federation_router = MessageRouter(app.federation_supervisor)
    app.federation_consumer = None

    with app.app_context():
        app.security.datastore.find_or_create_role(
            name="administrator", permissions={"administrator"}
        )
        db.session.commit()


def setup_logging(app):
    level = logging.INFO
    if app.config.get("DEBUG"):
        level = logging.DEBUG
    logger.setLevel(level)

    if sys.stdout.isatty():
        color_log_handler = colorlog.StreamHandler()
        color_log_formatter = colorlog.ColoredFormatter(
            '%(log_color)s[%(asctime)s] - OTSFederation[%(process)d] - %(module)s - %(funcName)s - %(lineno)d - %(levelname)s - %(message)s', datefmt="%Y-%m-%d %H:%M:%S")
        color_log_handler.setFormatter(color_log_formatter)
        logger.addHandler(color_log_handler)
        logger.info("Added color logger")

    os.makedirs(os.path.join(app.config.get("OTS_DATA_FOLDER"), "logs"), exist_ok=True)
    fh = TimedRotatingFileHandler(os.path.join(app.config.get("OTS_DATA_FOLDER"), 'logs', 'ots_federation.log'),
                                  when=app.config.get("OTS_LOG_ROTATE_WHEN"), interval=app.config.get("OTS_LOG_ROTATE_INTERVAL"),
                                  backupCount=app.config.get("OTS_BACKUP_COUNT"))
    fh.setFormatter(logging.Formatter("[%(asctime)s] - OTSFederation[%(process)d] - %(module)s - %(funcName)s - %(lineno)d - %(levelname)s - %(message)s"))
    logger.addHandler(fh)


def load_config(app):
    config_path = os.path.join(app.config.get("OTS_DATA_FOLDER"), "config.yml")
    if os.path.exists(config_path):
        app.config.from_file(config_path, load=yaml.safe_load)
    else:
        # First run, created config.yml based on default settings
        from ots_federation.blueprints.cli import write_config
        logger.info("Creating config.yml")
        write_config(config_path)


def create_app(cli=True, config=None):
    """
    Args:
        cli: Skip config.yml creation when started by the flask CLI
        config: Settings applied over DefaultConfig and config.yml, used by the tests
    """
    app = Flask(__name__)
    app.config.from_object(DefaultConfig)
    if config:
        app.config.update(config)
    os.makedirs(app.config.get("OTS_DATA_FOLDER"), exist_ok=True)
    setup_logging(app)

    if not cli and not config:
        load_config(app)
    elif os.path.exists(os.path.join(app.config.get("OTS_DATA_FOLDER"), "config.yml")) and not config:
        app.config.from_file(os.path.join(app.config.get("OTS_DATA_FOLDER"), "config.yml"), load=yaml.safe_load)

    # Credentials default to a folder under the configured data folder
    if not app.config.get("OTS_FEDERATION_CREDENTIALS_FOLDER"):
        app.config["OTS_FEDERATION_CREDENTIALS_FOLDER"] = os.path.join(app.config.get("OTS_DATA_FOLDER"), "federation")

    init_extensions(app)

    from ots_federation.blueprints.federation_api import federation_api_blueprint
    app.register_blueprint(federation_api_blueprint)

    from ots_federation.blueprints.federation_socketio import federation_socketio_blueprint
    app.register_blueprint(federation_socketio_blueprint)

    from ots_federation.blueprints.cli import federation
    app.cli.add_command(federation, name="federation")

    if not cli:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_host=1)

    return app


def main(app):
    with app.app_context():
        if app.config.get("DEBUG"):
            logger.debug("Starting in debug mode")
        else:
            logger.info("Starting in production mode")

        # Make sure at least one admin user exists
        admin_user = db.session.execute(db.session.query(Role).join(fsqla_v3.FsModels.roles_users).where(Role.name == "administrator")).scalar()
        if not admin_user:
            logger.info("Creating administrator account. The password is 'password'")
            app.security.datastore.create_user(username="administrator",
                                               password=hash_password("password"), roles=["administrator"])
        db.session.commit()

    app.federation_supervisor.start()

    if app.config.get("OTS_ENABLE_FEDERATION") and app.config.get("OTS_FEDERATION_CONSUME_RABBITMQ"):
        app.federation_consumer = FederationConsumer(app, app.federation_router)
        app.federation_consumer.start()
    else:
        logger.info("Not consuming CoT from RabbitMQ")

    app.start_time = datetime.now(timezone.utc)

    try:
        socketio.run(app, host=app.config.get("OTS_LISTENER_ADDRESS"), port=app.config.get("OTS_LISTENER_PORT"),
                     debug=app.config.get("DEBUG"), log_output=app.config.get("DEBUG"), use_reloader=False)
    except KeyboardInterrupt:
        logger.warning("Caught CTRL+C, exiting...")
    finally:
        if app.federation_consumer:
            app.federation_consumer.stop()
        app.federation_supervisor.stop()


def start():
    app = create_app(cli=False)
    main(app)


if __name__ == '__main__':
    start()
