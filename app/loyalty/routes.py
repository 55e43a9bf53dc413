"""
app/loyalty/routes.py
---------------------
JSON endpoints used by the staff loyalty screen.

This layer is the gatekeeper for business rules the service trusts
its caller with:
  • punches per visit are limited to 1..LOYALTY_MAX_PUNCHES_PER_VISIT
  • a reward needs a full card (9 punches) unless an admin records a
    goodwill redemption with a note
  • deleting a member needs an explicit confirm flag and an admin
"""
from flask import jsonify, request, session, current_app, abort

from app.loyalty import loyalty
from app.loyalty import engine
from app.loyalty.errors import (
    ServiceError, VALIDATION_ERROR, NOT_FOUND, UNIQUE_VIOLATION, STALE_WRITE,
    NOT_ENOUGH_PUNCHES, CHECK_VIOLATION, CONNECTION_ERROR,
)
from app.loyalty.phone import normalize_phone
from app.loyalty.service import LoyaltyService
from app.loyalty.stats import compute_loyalty_stats
from app.loyalty.validators import (
    validate_member_form, parse_member_form,
    validate_phone, validate_email, validate_count, validate_note,
)
from app.auth.decorators import login_required, admin_required


_STATUS_BY_CODE = {
    VALIDATION_ERROR:   400,
    NOT_FOUND:          404,
    UNIQUE_VIOLATION:   409,
    STALE_WRITE:        409,
    NOT_ENOUGH_PUNCHES: 409,
    CHECK_VIOLATION:    409,
    CONNECTION_ERROR:   503,
}


@loyalty.errorhandler(ServiceError)
def handle_service_error(err):
    status = _STATUS_BY_CODE.get(err.code, 500)
    return jsonify({'error': err.to_dict()}), status


# ── Helpers ───────────────────────────────────────────────────────

def _service() -> LoyaltyService:
    return LoyaltyService.from_config(current_app.config)


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _check(errors: dict) -> None:
    if errors:
        raise ServiceError('Please correct the highlighted fields.', VALIDATION_ERROR, errors)


def _max_per_visit() -> int:
    return current_app.config.get('LOYALTY_MAX_PUNCHES_PER_VISIT', 20)


# ── Lookup ────────────────────────────────────────────────────────

@loyalty.route('/members')
@login_required
def list_members():
    return jsonify([m.to_dict() for m in _service().list_all()])


@loyalty.route('/members/search')
@login_required
def search():
    q = request.args.get('q', '')
    return jsonify([m.to_dict() for m in _service().search(q)])


@loyalty.route('/members/<int:member_id>')
@login_required
def member_detail(member_id):
    service = _service()
    member  = service.get(member_id)
    history = service.member_history(member_id)
    return jsonify({
        'member':  member.to_dict(),
        'history': [h.to_dict() for h in history],
        'reward_ready': engine.reward_ready(member.punches),
    })


@loyalty.route('/history')
@login_required
def history():
    limit = request.args.get('limit', 50, type=int)
    limit = max(1, min(limit, 500))
    return jsonify([h.to_dict() for h in _service().recent_history(limit)])


@loyalty.route('/stats')
@login_required
def stats():
    service = _service()
    result = compute_loyalty_stats(service.list_all(), service.recent_history(limit=None))
    return jsonify(result.to_dict())


# ── Lifecycle ─────────────────────────────────────────────────────

@loyalty.route('/members', methods=['POST'])
@login_required
def create_member():
    data = _payload()
    _check(validate_member_form(data))

    member = _service().create(**parse_member_form(data))
    current_app.logger.info(f"Staff {session.get('user_id')} enrolled loyalty member {member.id}")
    return jsonify({
        'member':  member.to_dict(),
        'message': 'Member created with their first punch.',
    }), 201


@loyalty.route('/members/<int:member_id>/phone', methods=['PATCH'])
@login_required
def update_phone(member_id):
    data = _payload()
    _check(validate_phone(data.get('phone')))

    member = _service().update_phone(member_id, normalize_phone(data['phone']))
    return jsonify({'member': member.to_dict()})


@loyalty.route('/members/<int:member_id>/email', methods=['PATCH'])
@login_required
def update_email(member_id):
    data = _payload()
    _check(validate_email(data.get('email')))

    email = (data.get('email') or '').strip() or None
    member = _service().update_email(member_id, email)
    return jsonify({'member': member.to_dict()})


@loyalty.route('/members/<int:member_id>', methods=['DELETE'])
@admin_required
def delete_member(member_id):
    data = _payload()
    if data.get('confirm') is not True:
        raise ServiceError('Deleting a member cannot be undone; confirm to continue.',
                           VALIDATION_ERROR, {'confirm': 'Confirmation is required.'})

    _service().delete(member_id)
    current_app.logger.warning(f"Admin {session.get('user_id')} deleted loyalty member {member_id}")
    return '', 204


# ── Punches ───────────────────────────────────────────────────────

@loyalty.route('/members/<int:member_id>/punches', methods=['POST'])
@login_required
def add_punches(member_id):
    """
    Body: {current_punches, current_total, delta, carry_over?}
    carry_over=true redeems and rolls the excess onto a new card when
    the grant overshoots 9; otherwise the card caps at 9.
    """
    data = _payload()
    errors = {}
    errors.update(validate_count(data, 'current_punches', 0, engine.MAX_PUNCHES))
    errors.update(validate_count(data, 'current_total', 0))
    errors.update(validate_count(data, 'delta', 1, _max_per_visit()))
    _check(errors)

    service = _service()
    args = (member_id, int(data['current_punches']), int(data['current_total']), int(data['delta']))

    if data.get('carry_over') is True:
        result = service.punch_with_carry_over(*args)
        body = {
            'new_balance':   result.new_balance,
            'punches_added': result.punches_added,
            'carried_over':  result.carried_over,
            'redeemed':      result.redeemed,
        }
    else:
        result = service.add_punches(*args)
        body = {
            'new_balance':  result.new_balance,
            'actual_added': result.actual_added,
        }

    member = service.get(member_id)
    body['member'] = member.to_dict()
    body['reward_ready'] = engine.reward_ready(member.punches)
    return jsonify(body)


@loyalty.route('/members/<int:member_id>/punches/remove', methods=['POST'])
@login_required
def remove_punches(member_id):
    """Body: {current_punches, delta, reason?}"""
    data = _payload()
    errors = {}
    errors.update(validate_count(data, 'current_punches', 0, engine.MAX_PUNCHES))
    errors.update(validate_count(data, 'delta', 1, _max_per_visit()))
    errors.update(validate_note(data, 'reason'))
    _check(errors)

    service = _service()
    reason = (data.get('reason') or '').strip() or None
    result = service.remove_punches(member_id, int(data['current_punches']), int(data['delta']), reason)

    return jsonify({
        'new_balance': result.new_balance,
        'removed':     result.removed,
        'member':      service.get(member_id).to_dict(),
    })


@loyalty.route('/members/<int:member_id>/redeem', methods=['POST'])
@login_required
def redeem(member_id):
    """
    Body: {current_punches, current_total_redeemed, goodwill?, note?}
    A full card is required. goodwill=true lets an admin redeem early,
    with a note explaining why. The card is re-checked on the locked row.
    """
    data = _payload()
    errors = {}
    errors.update(validate_count(data, 'current_punches', 0, engine.MAX_PUNCHES))
    errors.update(validate_count(data, 'current_total_redeemed', 0))
    errors.update(validate_note(data, 'note'))
    _check(errors)

    service  = _service()
    member   = service.get(member_id)
    punches  = int(data['current_punches'])
    note     = (data.get('note') or '').strip() or None
    goodwill = not engine.reward_ready(punches)

    if goodwill:
        if data.get('goodwill') is not True:
            raise ServiceError(
                f'{member.name} has {punches} of {engine.MAX_PUNCHES} punches; '
                f'a full card is required to redeem.',
                NOT_ENOUGH_PUNCHES,
                {'punches': punches, 'required': engine.MAX_PUNCHES},
            )
        if session.get('role') != 'admin':
            abort(403)
        _check({} if note else {'note': 'A note is required for a goodwill redemption.'})
        current_app.logger.warning(
            f"Goodwill redemption for member {member_id} at {punches} punches by staff {session.get('user_id')}"
        )

    service.redeem(
        member_id, int(data['current_total_redeemed']), note=note,
        current_punches=punches, require_full=not goodwill,
    )
    return jsonify({'member': service.get(member_id).to_dict()})


# ── Audit ─────────────────────────────────────────────────────────

@loyalty.route('/members/<int:member_id>/reconcile')
@admin_required
def reconcile(member_id):
    result = _service().reconcile(member_id)
    return jsonify({
        'member_id':  result.member_id,
        'cached':     result.cached,
        'replayed':   result.replayed,
        'entries':    result.entries,
        'consistent': result.consistent,
    })
