import time

from flask import Blueprint, request, jsonify, current_app as app
from flask_security import auth_required, roles_required

from ots_federation.extensions import logger
from ots_federation.federation.errors import FederationError, ValidationError, PeerConnectionError
from ots_federation.federation.snapshot import PeerSnapshot
from ots_federation.forms.federation_form import CertificateUploadForm

federation_api_blueprint = Blueprint('federation_api_blueprint', __name__)


@federation_api_blueprint.errorhandler(FederationError)
def federation_error(e: FederationError):
    response = {'success': False, 'error': str(e)}
    if isinstance(e, ValidationError) and e.errors:
        response['errors'] = e.errors

    if e.status_code >= 500:
        logger.error(f"Federation request failed: {e}")
    else:
        logger.warning(f"Federation request rejected: {e}")
    return jsonify(response), e.status_code


def peer_changed():
    # The supervisor picks the change up on its next pass, don't make the caller wait for it
    app.federation_supervisor.wake()


@federation_api_blueprint.route('/api/federations', methods=['GET'])
@auth_required()
@roles_required('administrator')
def list_federations():
    try:
        page = int(request.args.get('page')) if 'page' in request.args else 1
        per_page = int(request.args.get('per_page')) if 'per_page' in request.args else 10
    except ValueError:
        return jsonify({'success': False, 'error': 'Invalid page or per_page number'}), 400

    if page < 1 or per_page < 1:
        return jsonify({'success': False, 'error': 'Invalid page or per_page number'}), 400

    return jsonify(app.federation_registry.list(page, per_page))


@federation_api_blueprint.route('/api/federations/health', methods=['GET'])
@auth_required()
@roles_required('administrator')
def federation_health():
    registry = app.federation_registry
    supervisor = app.federation_supervisor

    statuses = registry.status_counts()
    return jsonify({
        'success': True,
        'health': {
            'federation_enabled': app.config.get('OTS_ENABLE_FEDERATION', False),
            'supervisor_running': supervisor.running,
            'total_federations': sum(statuses.values()),
            'enabled_federations': registry.count_enabled(),
            'statuses': statuses,
            'active_workers': len(supervisor.workers()),
            'node_id': app.config.get('OTS_NODE_ID'),
        }
    })


@federation_api_blueprint.route('/api/federations/<int:federation_id>', methods=['GET'])
@auth_required()
@roles_required('administrator')
def get_federation(federation_id):
    registry = app.federation_registry
    return jsonify(registry.serialize(registry.get(federation_id)))


@federation_api_blueprint.route('/api/federations', methods=['POST'])
@auth_required()
@roles_required('administrator')
def create_federation():
    """
    Create an outbound federation.

    Required JSON parameters:
        - name: Display name
        - address: IP address or hostname of the peer
        - port: Peer federation port

    Optional JSON parameters:
        - protocol: "tcp" or "ssl" (default: "ssl")
        - enabled: Boolean (default: true)
        - username, password: Credentials sent after the session is established
        - push_data_types: Any of cot, chat, missions, datapackages, video (default: ["cot"])
        - notes: Free text
    """
    registry = app.federation_registry
    federation = registry.create(request.get_json(silent=True))
    peer_changed()
    return jsonify(registry.serialize(federation)), 201


@federation_api_blueprint.route('/api/federations/<int:federation_id>', methods=['PUT'])
@auth_required()
@roles_required('administrator')
def update_federation(federation_id):
    """Same parameters as create. Omitted fields and an empty password keep their current values"""
    registry = app.federation_registry
    federation = registry.update(federation_id, request.get_json(silent=True))
    peer_changed()
    return jsonify(registry.serialize(federation))


@federation_api_blueprint.route('/api/federations/<int:federation_id>', methods=['DELETE'])
@auth_required()
@roles_required('administrator')
def delete_federation(federation_id):
    app.federation_registry.delete(federation_id)
    peer_changed()
    return jsonify({'success': True})


@federation_api_blueprint.route('/api/federations/<int:federation_id>/toggle', methods=['POST'])
@auth_required()
@roles_required('administrator')
def toggle_federation(federation_id):
    enabled = app.federation_registry.toggle(federation_id)
    peer_changed()
    return jsonify({'success': True, 'enabled': enabled})


@federation_api_blueprint.route('/api/federations/<int:federation_id>/upload_cert', methods=['POST'])
@auth_required()
@roles_required('administrator')
def upload_certificate(federation_id):
    registry = app.federation_registry
    # 404 before looking at the upload
    registry.get(federation_id)

    form = CertificateUploadForm(formdata=request.form, meta={'csrf': False})
    if not form.validate():
        raise ValidationError("Invalid cert_type. Must be one of ca, client_cert, client_key", form.errors)

    if 'file' not in request.files or not request.files['file'].filename:
        raise ValidationError("No file provided", {'file': ["This field is required."]})

    file = request.files['file']
    federation = registry.upload_cert(federation_id, form.cert_type.data, file.filename, file.read())
    peer_changed()
    return jsonify(registry.serialize(federation))


@federation_api_blueprint.route('/api/federations/<int:federation_id>/test', methods=['POST'])
@auth_required()
@roles_required('administrator')
def test_federation_connection(federation_id):
    """Make a single connection attempt with the stored settings. The peer's status is left alone"""
    registry = app.federation_registry
    federation = registry.get(federation_id)
    peer = PeerSnapshot.from_model(federation, registry.credential_store.load(federation_id))

    start_time = time.time()
    try:
        app.federation_supervisor.test_connection(peer)
    except PeerConnectionError as e:
        logger.warning(f"Connection test to {peer.name} failed: {e}")
        return jsonify({'success': False, 'error': f"Failed to connect to {peer.name}: {e}"}), 503

    return jsonify({
        'success': True,
        'message': f"Successfully connected to {peer.name} via {peer.protocol.upper()}",
        'connection_time_ms': round((time.time() - start_time) * 1000, 2),
    })
