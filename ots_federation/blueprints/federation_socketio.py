import functools

from flask import request, Blueprint
from flask_security import current_user
from flask_socketio import disconnect

from ots_federation.extensions import logger, socketio

federation_socketio_blueprint = Blueprint('federation_socketio_blueprint', __name__)


def administrator_only(f):
    @functools.wraps(f)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated or not current_user.has_role('administrator'):
            logger.debug("Disconnecting {} from {}".format(request.sid, request.namespace))
            disconnect(request.sid, namespace=request.namespace)
            return False
        return f(*args, **kwargs)

    return wrapped


@socketio.on('connect', namespace="/socket.io")
@administrator_only
def connect(auth=None):
    # federation_status events are only sent to administrators
    logger.debug('got a socketio connection from {}'.format(current_user.username))
