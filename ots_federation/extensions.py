import colorlog
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from flask_security.models import fsqla_v3 as fsqla

from ots_federation.models.Base import Base

logger = colorlog.getLogger('OTSFederation')

db = SQLAlchemy(model_class=Base)
fsqla.FsModels.set_db_info(db)

socketio = SocketIO(async_mode='gevent')
