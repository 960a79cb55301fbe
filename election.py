"""
Election rules: schedule/status checks, vote tallies and history archiving.
"""
import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from schemas import ElectionSettings, HistoryEntry

logger = logging.getLogger(__name__)

SETTINGS_PATH = 'settings/election'
DEFAULT_SETTINGS = {'status': 'active', 'startDate': None, 'endDate': None, 'activeGroupId': None}


def parse_datetime(value):
    """Parses an ISO-8601 string; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_settings(db, now=None):
    """
    Returns the election settings document, filling defaults. An active
    election whose end date has passed is marked as ended and saved.
    """
    stored = db.get_path(SETTINGS_PATH) or {}
    settings = {**DEFAULT_SETTINGS, **{k: v for k, v in stored.items() if k != 'id'}}
    if settings.get('status') not in ('active', 'ended'):
        settings['status'] = 'active'
    now = now or datetime.now(timezone.utc)
    end_time = parse_datetime(settings.get('endDate'))
    if settings['status'] == 'active' and end_time and end_time <= now:
        settings['status'] = 'ended'
        db.set_path(SETTINGS_PATH, settings)
        logger.info("Election end date %s passed; status set to ended", settings['endDate'])
    return settings


def voting_open(settings, now=None):
    if settings.get('status') != 'active':
        return False
    now = now or datetime.now(timezone.utc)
    start_time = parse_datetime(settings.get('startDate'))
    end_time = parse_datetime(settings.get('endDate'))
    if start_time and now < start_time:
        return False
    if end_time and now >= end_time:
        return False
    return True


def closed_reason(settings, now=None):
    """Human-readable reason voting is closed, or None when it is open."""
    if settings.get('status') == 'ended':
        return "The voting period is now closed. Thank you for your participation."
    now = now or datetime.now(timezone.utc)
    start_time = parse_datetime(settings.get('startDate'))
    if start_time and now < start_time:
        return f"Voting opens at {start_time.isoformat()}."
    if not voting_open(settings, now):
        return "The voting period is now closed. Thank you for your participation."
    return None


def validate_settings_update(db, current, changes):
    """
    Merges ``changes`` into ``current`` and validates the result.
    Returns (settings_document, error_message).
    """
    merged = {**current, **changes}
    merged.pop('id', None)
    try:
        settings = ElectionSettings(**merged)
    except ValidationError as e:
        first = e.errors()[0]
        field = '.'.join(str(p) for p in first.get('loc', ())) or 'settings'
        return None, f"{field}: {first.get('msg')}"
    if settings.activeGroupId and not db.exists('groups', settings.activeGroupId):
        return None, f"Group {settings.activeGroupId} does not exist."
    return settings.to_document(), None


def tally(votes, candidates, groups):
    """
    Counts votes per candidate within each group.

    Votes for candidates that no longer exist are still counted under the
    candidate name recorded on the vote.
    """
    counts = {}
    names = {}
    for vote in votes:
        key = (vote.get('groupId'), vote.get('candidateId'))
        counts[key] = counts.get(key, 0) + 1
        names.setdefault(key, vote.get('candidateName') or 'Unknown candidate')

    group_names = {g['id']: g.get('name', g['id']) for g in groups}
    group_ids = [g['id'] for g in groups]
    for group_id, _ in counts:
        if group_id not in group_names:
            group_names[group_id] = 'Removed group'
            group_ids.append(group_id)

    results = []
    for group_id in group_ids:
        rows = {}
        for c in candidates:
            if c.get('groupId') == group_id:
                rows[c['id']] = {'candidateId': c['id'], 'name': c.get('name'), 'votes': 0}
        for (g_id, cand_id), count in counts.items():
            if g_id != group_id:
                continue
            row = rows.setdefault(cand_id, {'candidateId': cand_id, 'name': names[(g_id, cand_id)], 'votes': 0})
            row['votes'] = count
        total = sum(r['votes'] for r in rows.values())
        for row in rows.values():
            row['percentage'] = round(row['votes'] / total * 100.0, 2) if total else 0.0
        ordered = sorted(rows.values(), key=lambda r: (-r['votes'], r['name'] or ''))
        top = ordered[0]['votes'] if ordered else 0
        winners = [r['name'] for r in ordered if top and r['votes'] == top]
        results.append({
            'groupId': group_id,
            'groupName': group_names[group_id],
            'totalVotes': total,
            'candidates': ordered,
            'winners': winners,
        })
    return results


def candidate_vote_counts(votes, candidates):
    """Per-candidate totals used by the admin dashboard chart."""
    counts = {}
    for vote in votes:
        counts[vote.get('candidateId')] = counts.get(vote.get('candidateId'), 0) + 1
    return [{'name': c.get('name'), 'votes': counts.get(c['id'], 0)} for c in candidates]


def summarize_for_history(name, votes, candidates, groups, today=None):
    results = tally(votes, candidates, groups)
    overall = {}
    for group in results:
        for row in group['candidates']:
            overall[row['name']] = overall.get(row['name'], 0) + row['votes']
    top = max(overall.values()) if overall else 0
    winner = ' / '.join(sorted(n for n, v in overall.items() if top and v == top)) or 'N/A'
    entry = HistoryEntry(
        name=name,
        date=(today or datetime.now(timezone.utc).date()).isoformat(),
        totalVotes=len(votes),
        winner=winner,
        groups=[
            {'groupName': g['groupName'], 'totalVotes': g['totalVotes'], 'winners': g['winners']}
            for g in results
        ],
    )
    return entry.model_dump()


def search_history(entries, term):
    term = (term or '').strip().lower()
    matched = [e for e in entries if not term or term in e.get('name', '').lower() or term in e.get('date', '')]
    return sorted(matched, key=lambda e: e.get('date', ''), reverse=True)
