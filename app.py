# app.py
import os
import json
import datetime
from functools import wraps

from flask import Flask, request, session, g, jsonify

# Firebase Admin (Firestore + Auth)
import firebase_admin
from firebase_admin import credentials, auth as fb_auth, firestore as fb_firestore

from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from Mapies import map_store
from Mapies.billing import BillingService
from Mapies.classes import ColumnMapping
from Mapies.config import Config, validate_config
from Mapies.csv_processor import CsvProcessingService
from Mapies.errors import MapiesError, InvalidArgument, Unauthenticated, PermissionDenied, NotFound
from Mapies.geocoding import GeocodingService
from Mapies.html_edits import insert_watermark
from Mapies.logging_utils import setup_logging
from Mapies.plans import SUBSCRIPTION_PLANS, get_user_limits, get_feature_access, plan_of, fix_user_limits, require_action
from Mapies.utility_functions import decode_upload

from make_map import generate_map


VERSION = '1.0.0'


def create_app(db=None, config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    app.secret_key = app.config['SECRET_KEY']

    setup_logging()

    # placeholder for Firestore client
    app.db = db

    # -------------------------
    # Firebase Admin init
    # -------------------------
    def init_firebase():
        # 1. Check if already initialized
        try:
            firebase_admin.get_app()
            app.db = fb_firestore.client()
            return
        except ValueError:
            pass

        # 2. Service account from the environment, else application default credentials
        cred_path = app.config.get('FIREBASE_CREDENTIALS')
        try:
            if cred_path and os.path.exists(cred_path):
                firebase_admin.initialize_app(credentials.Certificate(cred_path))
                app.logger.info("Initialized Firebase with: %s", cred_path)
            else:
                firebase_admin.initialize_app()
                app.logger.info("Initialized Firebase with application default credentials")
            app.db = fb_firestore.client()
        except Exception as e:
            app.logger.exception("Firebase initialisation failed: %s", e)
            app.db = None

    if app.db is None:
        init_firebase()

    app.geocoder = GeocodingService.from_config(app.config)
    app.csv_service = CsvProcessingService(app.db, app.geocoder, run_async=app.config['CSV_PROCESS_ASYNC'])
    app.billing = BillingService.from_config(app.db, app.config)


    # -------------------------
    # Helpers
    # -------------------------
    def require_db():
        if app.db is None:
            raise MapiesError("Firestore not configured")
        return app.db

    def authenticate():
        """Session uid, or a Firebase ID token in the Authorization header."""
        if session.get('uid'):
            return session['uid'], session.get('email')

        header = request.headers.get('Authorization', '')
        if header.startswith('Bearer '):
            try:
                decoded = fb_auth.verify_id_token(header[len('Bearer '):])
            except Exception as e:
                app.logger.warning("Failed to verify id token: %s", e)
                raise Unauthenticated("Invalid token")
            return decoded.get('uid'), decoded.get('email')
        return None, None

    def login_required(fn):
        @wraps(fn)
        def wrapper(*a, **kw):
            uid, email = authenticate()
            if not uid:
                raise Unauthenticated("User must be authenticated")
            g.uid = uid
            g.email = (email or '').lower() or None
            return fn(*a, **kw)
        return wrapper

    def json_body():
        return request.get_json(silent=True) or {}

    def user_doc(uid):
        doc = require_db().collection("users").document(uid).get()
        return doc.to_dict() if doc.exists else {}

    def with_cors(response, status=200):
        if not isinstance(response, app.response_class):
            response = jsonify(response)
        response.status_code = status
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
        return response

    @app.errorhandler(MapiesError)
    def handle_mapies_error(e):
        if e.status >= 500:
            app.logger.error("%s: %s", type(e).__name__, e)
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        app.logger.exception("Unhandled error on %s: %s", request.path, e)
        return jsonify({"error": "Internal server error", "details": str(e)}), 500


    # -------------------------
    # CSV import
    # -------------------------
    def read_csv_upload():
        """Returns the upload fields from a JSON or multipart request."""
        if request.files.get('file') is not None:
            upload = request.files['file']
            try:
                mapping = json.loads(request.form.get('columnMapping') or 'null')
            except ValueError:
                raise InvalidArgument("columnMapping must be valid JSON")
            return {
                'csvContent': decode_upload(upload.read()),
                'fileName': request.form.get('fileName') or secure_filename(upload.filename or '') or 'upload.csv',
                'userId': request.form.get('userId'),
                'mapId': request.form.get('mapId'),
                'columnMapping': mapping,
            }
        return json_body()

    @app.route('/processCsvUpload', methods=['POST', 'OPTIONS'])
    def process_csv_upload():
        if request.method == 'OPTIONS':
            return with_cors(app.response_class(''), 204)

        try:
            uid, _ = authenticate()
            if not uid:
                raise Unauthenticated("User must be authenticated")
            data = read_csv_upload()
            csv_content = data.get('csvContent')
            file_name = data.get('fileName')
            user_id = data.get('userId')
            map_id = data.get('mapId')
            raw_mapping = data.get('columnMapping')

            if not csv_content or not file_name or not user_id or not map_id or not raw_mapping:
                raise InvalidArgument("Missing required fields")
            if user_id != uid:
                raise PermissionDenied("Cannot import into another user's map")
            if not isinstance(raw_mapping, dict):
                raise InvalidArgument("Invalid column mapping")
            mapping = ColumnMapping.from_dict(raw_mapping)
            if not mapping.is_valid():
                raise InvalidArgument("Invalid column mapping")

            db = require_db()
            require_action(user_doc(user_id), 'useBulkImport', message="Bulk import not available on current plan")
            if map_store.get_map(db, user_id, map_id) is None:
                raise NotFound("Map not found")

            job_id = app.csv_service.create_job(user_id, map_id, file_name, mapping, csv_content)
            app.csv_service.start(csv_content, mapping, job_id, user_id, map_id)

            app.logger.info("CSV upload job %s started for user %s map %s", job_id, user_id, map_id)
            return with_cors({
                'success': True,
                'jobId': job_id,
                'message': 'CSV processing started. You can close this window and check back later.',
            }, 202)
        except MapiesError as e:
            return with_cors(e.to_dict(), e.status)
        except Exception as e:
            app.logger.exception("Error in processCsvUpload: %s", e)
            return with_cors({'error': 'Internal server error', 'details': str(e)}, 500)

    @app.route('/retryCsvJob', methods=['POST', 'OPTIONS'])
    def retry_csv_job():
        if request.method == 'OPTIONS':
            return with_cors(app.response_class(''), 204)

        try:
            uid, _ = authenticate()
            if not uid:
                raise Unauthenticated("User must be authenticated")
            job_id = json_body().get('jobId')
            if not job_id:
                raise InvalidArgument("Job ID is required")
            require_db()
            job = app.csv_service.get_job(job_id)
            if job is None:
                raise NotFound("Job not found")
            if job.get('userId') != uid:
                raise PermissionDenied("Access denied")

            reprocessing = app.csv_service.retry_job(job_id)
            message = 'Job queued for retry' if reprocessing else 'Job reset. Please upload the file again to retry.'
            return with_cors({'success': True, 'message': message, 'reprocessing': reprocessing}, 200)
        except MapiesError as e:
            return with_cors(e.to_dict(), e.status)
        except Exception as e:
            app.logger.exception("Error in retryCsvJob: %s", e)
            return with_cors({'error': 'Internal server error', 'details': str(e)}, 500)

    @app.route('/api/csv-jobs/<job_id>')
    @login_required
    def csv_job_status(job_id):
        require_db()
        job = app.csv_service.get_job(job_id)
        if job is None:
            raise NotFound("Job not found")
        if job.get('userId') != g.uid:
            raise PermissionDenied("Access denied")
        job.pop('csvContent', None)
        return jsonify(job), 200


    # -------------------------
    # Auth endpoints
    # -------------------------
    @app.route('/session_login', methods=['POST'])
    def session_login():
        data = json_body()
        id_token = data.get('idToken')
        if not id_token:
            return jsonify({"error": "missing idToken"}), 400
        try:
            decoded = fb_auth.verify_id_token(id_token)
        except Exception as e:
            app.logger.error("Failed to verify id token: %s", e)
            return jsonify({"error": "invalid token"}), 401

        session['uid'] = decoded.get('uid')
        session['email'] = (decoded.get('email') or '').lower() or None
        app.logger.info("Created server session for uid=%s", session['uid'])
        return jsonify({"status": "ok"}), 200

    @app.route('/sign_out', methods=['GET', 'POST'])
    def sign_out():
        session.pop('uid', None)
        session.pop('email', None)
        return jsonify({"status": "ok"}), 200


    # -------------------------
    # Maps
    # -------------------------
    @app.route('/api/maps', methods=['GET', 'POST'])
    @login_required
    def api_maps():
        db = require_db()
        if request.method == 'POST':
            map_id = map_store.create_map(db, g.uid, json_body())
            return jsonify({"id": map_id}), 201
        return jsonify({"maps": map_store.get_user_maps(db, g.uid)}), 200

    @app.route('/api/maps/shared')
    @login_required
    def api_shared_maps():
        if not g.email:
            raise InvalidArgument("An email address is required to list shared maps")
        return jsonify({"maps": map_store.get_shared_maps(require_db(), g.email)}), 200

    @app.route('/api/maps/<map_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def api_map(map_id):
        db = require_db()
        if request.method == 'PATCH':
            map_store.update_map(db, g.uid, map_id, json_body())
            return jsonify({"status": "ok"}), 200
        if request.method == 'DELETE':
            map_store.delete_map(db, g.uid, map_id)
            app.logger.info("Deleted map %s for user %s", map_id, g.uid)
            return jsonify({"status": "ok", "deleted": map_id}), 200

        map_data = map_store.get_map(db, g.uid, map_id)
        if map_data is None:
            raise NotFound("Map not found")
        return jsonify(map_data), 200


    # -------------------------
    # Markers
    # -------------------------
    @app.route('/api/maps/<owner_id>/<map_id>/markers', methods=['GET', 'POST'])
    @login_required
    def api_markers(owner_id, map_id):
        db = require_db()
        write = request.method == 'POST'
        map_store.require_map_access(db, owner_id, map_id, g.uid, g.email, require_write=write)

        if write:
            marker_id = map_store.add_marker(db, owner_id, map_id, json_body())
            return jsonify({"id": marker_id}), 201
        return jsonify({"markers": map_store.get_map_markers(db, owner_id, map_id)}), 200

    @app.route('/api/maps/<owner_id>/<map_id>/markers/<marker_id>', methods=['PATCH', 'DELETE'])
    @login_required
    def api_marker(owner_id, map_id, marker_id):
        db = require_db()
        map_store.require_map_access(db, owner_id, map_id, g.uid, g.email, require_write=True)

        if request.method == 'DELETE':
            map_store.delete_marker(db, owner_id, map_id, marker_id)
            return jsonify({"status": "ok", "deleted": marker_id}), 200
        map_store.update_marker(db, owner_id, map_id, marker_id, json_body())
        return jsonify({"status": "ok"}), 200


    # -------------------------
    # Sharing and ownership
    # -------------------------
    @app.route('/api/maps/<map_id>/share', methods=['POST'])
    @login_required
    def api_share_map(map_id):
        data = json_body()
        map_store.share_map_with_user(require_db(), map_id, g.uid, data.get('email'), data.get('role') or 'viewer')
        return jsonify({"success": True}), 200

    @app.route('/api/maps/<map_id>/share/remove', methods=['POST'])
    @login_required
    def api_unshare_map(map_id):
        map_store.remove_user_from_map(require_db(), map_id, g.uid, json_body().get('email'))
        return jsonify({"success": True}), 200

    @app.route('/api/maps/<map_id>/share/role', methods=['POST'])
    @login_required
    def api_update_role(map_id):
        data = json_body()
        map_store.update_user_role(require_db(), map_id, g.uid, data.get('email'), data.get('role'))
        return jsonify({"success": True}), 200

    @app.route('/api/maps/<owner_id>/<map_id>/leave', methods=['POST'])
    @login_required
    def api_leave_map(owner_id, map_id):
        if not g.email:
            raise InvalidArgument("User email is required")
        map_store.leave_shared_map(require_db(), map_id, owner_id, g.uid, g.email)
        return jsonify({"success": True, "message": "Successfully left the shared map"}), 200

    @app.route('/api/maps/<map_id>/transfer', methods=['POST'])
    @login_required
    def api_transfer_map(map_id):
        result = map_store.transfer_map_ownership(require_db(), g.uid, map_id, json_body().get('newOwnerEmail'))
        return jsonify(result), 200


    # -------------------------
    # Plans and billing
    # -------------------------
    @app.route('/api/plans')
    def api_plans():
        return jsonify({"plans": SUBSCRIPTION_PLANS}), 200

    @app.route('/api/me/limits')
    @login_required
    def api_my_limits():
        doc = user_doc(g.uid)
        return jsonify({
            "plan": plan_of(doc),
            "limits": get_user_limits(doc),
            "features": get_feature_access(doc),
        }), 200

    @app.route('/api/billing/checkout', methods=['POST'])
    @login_required
    def api_checkout():
        data = json_body()
        result = app.billing.create_checkout_session(
            g.uid,
            g.email or data.get('userEmail'),
            data.get('priceId'),
            success_url=data.get('successUrl'),
            cancel_url=data.get('cancelUrl'),
            trial_days=data.get('trialPeriodDays'),
            coupon_id=data.get('couponId'),
        )
        return jsonify(result), 200

    @app.route('/api/billing/portal', methods=['POST'])
    @login_required
    def api_billing_portal():
        data = json_body()
        customer_id = user_doc(g.uid).get('stripeCustomerId')
        return jsonify(app.billing.create_portal_session(customer_id, data.get('returnUrl'))), 200

    @app.route('/api/billing/cancel', methods=['POST'])
    @login_required
    def api_cancel_subscription():
        require_db()
        return jsonify(app.billing.cancel_subscription(g.uid)), 200

    @app.route('/api/billing/sync', methods=['POST'])
    @login_required
    def api_sync_subscription():
        require_db()
        return jsonify(app.billing.sync_user_subscription(g.uid)), 200

    @app.route('/api/billing/prices')
    def api_prices():
        return jsonify(app.billing.list_prices()), 200

    @app.route('/stripe/webhook', methods=['POST'])
    def stripe_webhook():
        payload = request.get_data()
        signature = request.headers.get('Stripe-Signature')
        try:
            event = app.billing.construct_event(payload, signature)
        except InvalidArgument as e:
            app.logger.warning("Rejected Stripe webhook: %s", e)
            return jsonify({"error": str(e)}), 400

        result = app.billing.handle_event(event)
        body = dict(result.to_dict(), received=True)
        return jsonify(body), 200 if result.success else 500

    @app.route('/webhookStatus')
    @login_required
    def webhook_status():
        return jsonify({
            "status": "active",
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "version": VERSION,
        }), 200


    # -------------------------
    # Admin
    # -------------------------
    @app.route('/admin/fix-user-limits', methods=['POST'])
    def admin_fix_user_limits():
        token = app.config.get('ADMIN_TOKEN')
        if not token or request.headers.get('X-Admin-Token') != token:
            raise PermissionDenied("Admin token required")
        summary = fix_user_limits(require_db())
        app.logger.info("User limits fix: %s", summary)
        return jsonify(dict(summary, success=True)), 200


    # -------------------------
    # Embeds
    # -------------------------
    @app.route('/embed/<map_id>')
    def embed_map(map_id):
        db = require_db()
        map_data, markers = map_store.get_public_map(db, map_id)
        if map_data is None:
            return "Map not found", 404

        page = generate_map(markers, title=map_data.get('name'))
        owner = map_data.get('userId')
        if not owner or get_user_limits(user_doc(owner))['watermark']:
            page = insert_watermark(page, href=app.config['APP_URL'])
        return app.response_class(page, mimetype='text/html')


    @app.route('/_health')
    def health():
        info = {}
        try:
            info['firebase'] = bool(app.db)
        except Exception:
            info['firebase'] = False
        return jsonify(info), 200


    return app



if __name__ == '__main__':
    validate_config()
    application = create_app()
    application.run(host='0.0.0.0', port=5000, debug=True)
