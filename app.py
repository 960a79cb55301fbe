import os
import re
import logging
from datetime import datetime, timezone
from functools import wraps

import bcrypt
from flask import Flask, request, jsonify, url_for, session
from pydantic import ValidationError

from config import Config
from logging_config import setup_logging
from store import DocumentStore, auto_id
from errors import (
    StoreError,
    PermissionDeniedError,
    InvalidReceiptError,
    permission_error,
    emit_permission_error,
)
from schemas import (
    Group,
    Candidate,
    Vote,
    TranslationInput,
    FraudAnalysisInput,
)
from receipts import make_receipt, parse_receipt, vote_doc_id
from election import (
    SETTINGS_PATH,
    DEFAULT_SETTINGS,
    load_settings,
    voting_open,
    closed_reason,
    validate_settings_update,
    tally,
    candidate_vote_counts,
    summarize_for_history,
    search_history,
)
import ai_flows

app = Flask(__name__)
app.config.from_object(Config)

setup_logging(app.config['LOG_LEVEL'])
logger = logging.getLogger(__name__)

db = DocumentStore(app.config['DATA_DIR'])

NATIONAL_ID_RE = re.compile(r'[0-9]{16}')
SETTINGS_FIELDS = ('status', 'startDate', 'endDate', 'activeGroupId')


def hash_password(password):
    """Hashes a plaintext password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def check_password(password, hashed_password):
    """Checks a plaintext password against the stored hash."""
    if not password or not hashed_password:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed_password.encode('utf-8'))
    except ValueError:
        return False


ADMIN_PASSWORD_HASH = app.config.get('ADMIN_PASSWORD_HASH') or hash_password(app.config['ADMIN_PASSWORD'])

if not app.config.get('GEMINI_API_KEY'):
    logger.warning("GEMINI_API_KEY not found in environment variables; AI endpoints will fail.")


@permission_error.connect
def log_permission_error(error):
    logger.warning("Permission error: %s %s", error.operation, error.path)


def request_data():
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    return data if isinstance(data, dict) else {}


def first_error(exc):
    err = exc.errors()[0]
    msg = err.get('msg', 'Invalid input.')
    return msg[len('Value error, '):] if msg.startswith('Value error, ') else msg


@app.after_request
def add_security_headers(response):
    """Stops browsers from caching voter and admin responses."""
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('national_id'):
            return jsonify({'success': False, 'error': 'National ID not found. Please log in again.'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('admin_logged_in'):
            return jsonify({'success': False, 'error': 'You must be an admin to access this page.'}), 403
        return f(*args, **kwargs)
    return decorated_function


# --------------------------------- Voter ---------------------------------

@app.route('/')
def home():
    return jsonify({
        'service': 'tora',
        'logged_in': bool(session.get('national_id')),
        'full_name': session.get('full_name', ''),
    })


@app.route('/api/request-otp', methods=['POST'])
def request_otp():
    data = request_data()
    national_id = str(data.get('nationalId', '')).strip()
    if not NATIONAL_ID_RE.fullmatch(national_id):
        return jsonify({'success': False, 'error': 'National ID must be 16 digits.'}), 400
    groups = db.list('groups')
    if groups and all(db.exists('votes', vote_doc_id(national_id, g['id'])) for g in groups):
        return jsonify({'success': False, 'error': 'This National ID has already been used to vote.'}), 409
    session['pending_national_id'] = national_id
    session['otp_timestamp'] = datetime.now(timezone.utc).timestamp()
    logger.info("OTP issued for %s", national_id)
    return jsonify({'success': True, 'message': 'A one-time password has been sent to your registered phone.'})


@app.route('/api/verify-otp', methods=['POST'])
def verify_otp():
    data = request_data()
    input_otp = str(data.get('otp', '')).strip()
    pending_id = session.get('pending_national_id')
    timestamp = session.get('otp_timestamp')
    if not pending_id or not input_otp or timestamp is None:
        return jsonify({'success': False, 'error': 'Invalid request.'}), 400
    if datetime.now(timezone.utc).timestamp() - timestamp > app.config['OTP_TTL_SECONDS']:
        session.pop('pending_national_id', None)
        session.pop('otp_timestamp', None)
        return jsonify({'success': False, 'error': 'OTP has expired. Please request a new one.'}), 400
    if input_otp != app.config['MOCK_OTP']:
        return jsonify({'success': False, 'error': 'Invalid OTP. Please try again.'}), 401
    session['national_id'] = pending_id
    session.pop('pending_national_id', None)
    session.pop('otp_timestamp', None)
    return jsonify({'success': True, 'message': 'Login successful!', 'redirect': url_for('ballot')})


@app.route('/logout')
def logout():
    for key in ('national_id', 'full_name', 'pending_national_id', 'otp_timestamp'):
        session.pop(key, None)
    return jsonify({'success': True, 'redirect': url_for('home')})


@app.route('/api/verify-identity', methods=['POST'])
def verify_identity():
    data = request_data()
    national_id = data.get('nationalId') or session.get('national_id') or session.get('pending_national_id')
    try:
        result = ai_flows.verify_national_id(str(national_id or ''), data.get('dob', ''), data.get('district'))
    except ValidationError as e:
        return jsonify({'success': False, 'error': first_error(e)}), 400
    except Exception:
        logger.exception("NIDA verification error")
        return jsonify({'success': False, 'error': 'Could not connect to verification service.'}), 500
    if result.isValid:
        session['full_name'] = result.fullName or ''
        return jsonify({'success': True, 'data': result.model_dump()})
    return jsonify({'success': False, 'error': 'Invalid or unregistered National ID.', 'reason': result.reason}), 400


@app.route('/vote')
@login_required
def ballot():
    national_id = session['national_id']
    settings = load_settings(db)
    groups = sorted(db.list('groups'), key=lambda g: g.get('name', ''))
    candidates = sorted(db.list('candidates'), key=lambda c: c.get('name', ''))
    active_group = settings.get('activeGroupId')
    ballot_groups = []
    voted_groups = []
    for group in groups:
        has_voted = db.exists('votes', vote_doc_id(national_id, group['id']))
        if has_voted:
            voted_groups.append(group['id'])
        ballot_groups.append({
            **group,
            'candidates': [c for c in candidates if c.get('groupId') == group['id']],
            'hasVoted': has_voted,
            'acceptingVotes': not active_group or active_group == group['id'],
        })
    return jsonify({
        'electionStatus': settings['status'],
        'votingOpen': voting_open(settings),
        'message': closed_reason(settings),
        'groups': ballot_groups,
        'votedGroups': voted_groups,
    })


@app.route('/api/vote', methods=['POST'])
@login_required
def cast_vote():
    national_id = session['national_id']
    data = request_data()
    candidate_id = data.get('candidateId')
    if not candidate_id:
        return jsonify({'success': False, 'error': 'Please select a candidate and make sure you are logged in.'}), 400

    settings = load_settings(db)
    reason = closed_reason(settings)
    if reason:
        return jsonify({'success': False, 'error': reason}), 403

    candidate = db.get('candidates', candidate_id)
    if not candidate:
        return jsonify({'success': False, 'error': 'Candidate not found.'}), 404
    group_id = candidate.get('groupId')
    if not group_id or not db.exists('groups', group_id):
        return jsonify({'success': False, 'error': "This candidate's group no longer exists."}), 404
    active_group = settings.get('activeGroupId')
    if active_group and group_id != active_group:
        return jsonify({'success': False, 'error': 'Voting is currently open for another group only.'}), 403

    vote_id = vote_doc_id(national_id, group_id)
    if db.exists('votes', vote_id):
        return jsonify({'success': False, 'error': 'You have already cast a vote in this group.'}), 409

    vote = Vote(
        candidateId=candidate['id'],
        candidateName=candidate.get('name', ''),
        groupId=group_id,
        nationalId=national_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
    ).model_dump()
    try:
        db.create('votes', vote_id, vote)
    except PermissionDeniedError as e:
        emit_permission_error(e)
        body = {'success': False, 'error': 'Your vote could not be submitted. Please try again.'}
        if app.debug:
            body['debug'] = e.to_dict()
        return jsonify(body), 403
    except StoreError:
        logger.exception("Vote submission failed")
        return jsonify({'success': False, 'error': 'Your vote could not be submitted. Please try again.'}), 500

    receipt = make_receipt(national_id, group_id)
    logger.info("Vote recorded for group %s", group_id)
    return jsonify({
        'success': True,
        'message': 'Your vote has been cast successfully.',
        'receipt': receipt,
        'redirect': url_for('confirmation', receipt=receipt),
    }), 201


@app.route('/confirmation')
def confirmation():
    receipt = request.args.get('receipt', '')
    try:
        parse_receipt(receipt)
    except InvalidReceiptError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    return jsonify({'success': True, 'receipt': receipt, 'verify': url_for('verify_vote')})


@app.route('/api/verify-vote', methods=['POST'])
def verify_vote():
    data = request_data()
    receipt = str(data.get('receipt', '')).strip()
    try:
        national_id, group_id = parse_receipt(receipt)
    except InvalidReceiptError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    try:
        found = db.exists('votes', vote_doc_id(national_id, group_id))
    except StoreError:
        logger.exception("Error verifying vote")
        return jsonify({'success': False, 'error': 'An error occurred during verification.'}), 500
    if found:
        return jsonify({'success': True})
    return jsonify({'success': False, 'error': 'Vote not found.'}), 404


@app.route('/api/translate', methods=['POST'])
def translate():
    try:
        payload = TranslationInput(**request_data())
    except ValidationError as e:
        return jsonify({'success': False, 'error': first_error(e)}), 400
    try:
        result = ai_flows.translate_text(payload.text, payload.language)
    except Exception:
        logger.exception("Translation error")
        return jsonify({'success': False, 'error': 'Failed to translate text.'}), 500
    return jsonify({'success': True, 'data': result.model_dump()})


@app.route('/results')
def results():
    settings = load_settings(db)
    if settings['status'] != 'ended':
        return jsonify({
            'success': False,
            'error': 'Results will be published once the election has ended.',
        }), 403
    group_results = tally(db.list('votes'), db.list('candidates'), db.list('groups'))
    return jsonify({
        'success': True,
        'totalVotes': sum(g['totalVotes'] for g in group_results),
        'groups': group_results,
    })


# --------------------------------- Admin ---------------------------------

@app.route('/admin/auth', methods=['POST'])
def admin_login():
    password = request_data().get('password')
    if check_password(password, ADMIN_PASSWORD_HASH):
        session['admin_logged_in'] = True
        return jsonify({'success': True, 'message': 'Admin panel unlocked.', 'redirect': url_for('admin_dashboard')})
    logger.warning("Failed admin login attempt")
    return jsonify({'success': False, 'error': 'Invalid admin password.'}), 401


@app.route('/admin/logout')
def admin_logout():
    session.pop('admin_logged_in', None)
    return jsonify({'success': True, 'message': 'You have been logged out of the Admin Panel.'})


@app.route('/admin')
@admin_required
def admin_dashboard():
    settings = load_settings(db)
    votes = db.list('votes')
    candidates = db.list('candidates')
    return jsonify({
        'electionStatus': settings['status'],
        'votingOpen': voting_open(settings),
        'totalVotes': len(votes),
        'totalCandidates': len(candidates),
        'totalGroups': len(db.list('groups')),
        'electionData': candidate_vote_counts(votes, candidates),
    })


@app.route('/admin/groups', methods=['GET', 'POST'])
@admin_required
def admin_groups():
    if request.method == 'GET':
        return jsonify({'groups': sorted(db.list('groups'), key=lambda g: g.get('name', ''))})
    try:
        group = Group(**request_data())
    except ValidationError as e:
        return jsonify({'success': False, 'error': first_error(e)}), 400
    group_id = db.add('groups', group.model_dump())
    logger.info("Group %s created (%s)", group.name, group_id)
    return jsonify({'success': True, 'id': group_id, 'message': f'Group "{group.name}" has been created.'}), 201


@app.route('/admin/groups/<string:group_id>', methods=['DELETE'])
@admin_required
def remove_group(group_id):
    group = db.get('groups', group_id)
    if not group:
        return jsonify({'success': False, 'error': 'Group not found.'}), 404
    # Candidates of the group are left in place.
    db.delete('groups', group_id)
    return jsonify({'success': True, 'message': f'Group "{group.get("name")}" has been removed.'})


@app.route('/admin/groups/<string:group_id>/candidates', methods=['DELETE'])
@admin_required
def remove_group_candidates(group_id):
    candidates = db.list('candidates', groupId=group_id)
    with db.batch() as batch:
        for candidate in candidates:
            batch.delete('candidates', candidate['id'])
    return jsonify({'success': True, 'removed': len(candidates)})


@app.route('/admin/candidates', methods=['GET', 'POST'])
@admin_required
def admin_candidates():
    if request.method == 'GET':
        group_id = request.args.get('groupId')
        candidates = db.list('candidates', groupId=group_id) if group_id else db.list('candidates')
        return jsonify({'candidates': sorted(candidates, key=lambda c: c.get('name', ''))})
    try:
        candidate = Candidate(**request_data())
    except ValidationError as e:
        return jsonify({'success': False, 'error': first_error(e)}), 400
    if not db.exists('groups', candidate.groupId):
        return jsonify({'success': False, 'error': 'Please choose an existing group.'}), 400
    candidate_id = db.add('candidates', candidate.to_document())
    return jsonify({
        'success': True,
        'id': candidate_id,
        'message': f'{candidate.name} has been added to the list.',
    }), 201


@app.route('/admin/candidates/<string:candidate_id>', methods=['DELETE'])
@admin_required
def remove_candidate(candidate_id):
    candidate = db.get('candidates', candidate_id)
    if not candidate:
        return jsonify({'success': False, 'error': 'Candidate not found.'}), 404
    db.delete('candidates', candidate_id)
    return jsonify({'success': True, 'message': f'{candidate.get("name")} has been removed.'})


@app.route('/admin/election', methods=['GET', 'PUT'])
@admin_required
def election_settings():
    current = load_settings(db)
    if request.method == 'GET':
        return jsonify({**current, 'votingOpen': voting_open(current)})
    data = request_data()
    changes = {k: data[k] for k in SETTINGS_FIELDS if k in data}
    settings, error = validate_settings_update(db, current, changes)
    if error:
        return jsonify({'success': False, 'error': error}), 400
    db.set_path(SETTINGS_PATH, settings)
    logger.info("Election settings updated: status=%s", settings['status'])
    return jsonify({'success': True, 'settings': settings})


@app.route('/admin/election/end', methods=['POST'])
@admin_required
def end_election():
    settings = load_settings(db)
    settings['status'] = 'ended'
    db.set_path(SETTINGS_PATH, settings)
    return jsonify({'success': True, 'message': 'The election has been officially ENDED.', 'settings': settings})


@app.route('/admin/election/reset', methods=['POST'])
@admin_required
def reset_election():
    """Archives the current results, then clears every vote in one batch."""
    data = request_data()
    votes = db.list('votes')
    today = datetime.now(timezone.utc).date()
    name = (data.get('name') or '').strip() or f'Election {today.isoformat()}'
    entry = summarize_for_history(name, votes, db.list('candidates'), db.list('groups'), today=today)
    history_id = auto_id()
    with db.batch() as batch:
        batch.set('history', history_id, entry)
        for vote in votes:
            batch.delete('votes', vote['id'])
        batch.set('settings', 'election', DEFAULT_SETTINGS)
    logger.info("Election reset: %d votes archived as %s", len(votes), history_id)
    return jsonify({'success': True, 'historyId': history_id, 'removedVotes': len(votes)})


@app.route('/admin/results')
@admin_required
def admin_results():
    settings = load_settings(db)
    group_results = tally(db.list('votes'), db.list('candidates'), db.list('groups'))
    return jsonify({
        'electionStatus': settings['status'],
        'totalVotes': sum(g['totalVotes'] for g in group_results),
        'groups': group_results,
    })


@app.route('/admin/history')
@admin_required
def election_history():
    entries = search_history(db.list('history'), request.args.get('q'))
    return jsonify({'history': entries})


@app.route('/admin/fraud-detection', methods=['POST'])
@admin_required
def fraud_detection():
    data = request_data()
    voting_data = data.get('votingData')
    if not voting_data:
        voting_data = ai_flows.export_votes(db.list('votes'))
    try:
        payload = FraudAnalysisInput(votingData=voting_data)
    except ValidationError as e:
        return jsonify({'success': False, 'error': first_error(e)}), 400
    try:
        result = ai_flows.analyze_voting_patterns(payload.votingData)
    except Exception:
        logger.exception("Fraud analysis error")
        return jsonify({'success': False, 'error': 'Failed to analyze data.'}), 500
    return jsonify({'success': True, 'data': result.model_dump()})


@app.route('/admin/fraud-detection/sample')
@admin_required
def fraud_detection_sample():
    return jsonify({'votingData': ai_flows.SAMPLE_VOTING_DATA})


@app.errorhandler(404)
def page_not_found(e):
    return jsonify({'success': False, 'error': 'Not found.'}), 404


@app.errorhandler(StoreError)
def store_failure(e):
    logger.exception("Database error: %s", e)
    return jsonify({'success': False, 'error': 'A database error occurred. Please try again.'}), 500


if __name__ == "__main__":
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG') == '1')
