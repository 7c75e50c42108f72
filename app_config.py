from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, List, Mapping

import yaml

# Default chat command aliases; `prefix` is the leading character that marks a
# chat line as a command.  Each list can be overridden from commands.yml.
DEFAULT_COMMANDS = {
    'prefix': '!',
    'request': ['request', 'sr'],
    'viprequest': ['viprequest', 'vipsr', 'vipsong'],
    'list': ['list', 'queue'],
    'song': ['song'],
    'position': ['position', 'myqueue'],
    'remove': ['remove'],
    'help': ['help'],
    'tokens': ['tokens', 'vip'],
    'next': ['next'],
    'played': ['played'],
    'skip': ['skip'],
    'clear': ['clear'],
    'givevip': ['givevip'],
    'testsub': ['testsub'],
    'testbits': ['testbits'],
    'testsuperchat': ['testsuperchat'],
}

DEFAULT_MESSAGES = {
    'request_usage': 'Usage: !request <artist> - <song title> (e.g., !request Green Day - American Idiot)',
    'viprequest_usage': 'Usage: !viprequest <artist> - <song title> (costs 1 VIP token)',
    'request_unparsed': '@{user} Could not parse your request. Try: !request Artist - Song Title',
    'request_denied': '@{user} {reason}',
    'request_duplicate': '@{user} "{artist} - {title}" is already in the queue!',
    'request_added': '@{user} Added "{artist} - {title}" to the queue! Position: #{position} | Queue length: {length}',
    'vip_added': '@{user} ⭐ VIP Request! Added "{artist} - {title}" to position #{position}! ({tokens} VIP token(s) remaining)',
    'vip_no_tokens': "@{user} You don't have any VIP tokens! Earn tokens by subscribing, cheering bits, or Super Chatting. Check your balance with !tokens",
    'vip_spend_failed': '@{user} Failed to use VIP token: {error}',
    'cooldown': 'Please wait {seconds} seconds before requesting again.',
    'limit_reached': 'You already have {limit} pending requests. Wait for some to be played!',
    'list_empty': '@{user} The queue is empty! Be the first to request with !request',
    'list_link': '@{user} {length} song(s) in queue. View the list: {url}',
    'song_playing': '@{user} Now playing: "{artist} - {title}" (requested by {requester})',
    'song_next': '@{user} Up next: "{artist} - {title}" (requested by {requester})',
    'song_none': '@{user} No songs in queue. Request one with !request',
    'position_none': "@{user} You don't have any songs in the queue.",
    'position_list': '@{user} Your requests: {positions}',
    'remove_success': '@{user} Removed "{artist} - {title}" from the queue.',
    'remove_none': "@{user} You don't have any songs in the queue to remove.",
    'help': ('@{user} Commands: !request <song> | !viprequest <song> (priority, costs 1 token) | !list | '
             '!song | !tokens | !myqueue | !remove'),
    'tokens_earned': '@{user} you have {tokens} VIP token(s) (total earned: {total})',
    'tokens_none': '@{user} you have {tokens} VIP token(s). Earn tokens by subscribing, gifting subs, cheering bits, or Super Chatting!',
    'next_playing': 'Now playing: "{artist} - {title}" (requested by {requester})',
    'queue_empty': 'The queue is empty!',
    'played_next': 'Marked as played! Up next: "{artist} - {title}"',
    'played_empty': 'Marked as played! Queue is now empty.',
    'played_none': 'No song is currently playing.',
    'skipped': 'Skipped "{artist} - {title}"',
    'skip_none': 'Nothing to skip!',
    'clear_denied': 'Only the broadcaster can clear the queue.',
    'cleared': 'Cleared {count} song(s) from the queue.',
    'givevip_usage': 'Usage: !givevip <username> <amount>',
    'givevip_invalid': 'Please specify a valid positive number of tokens.',
    'givevip_existing': 'Gave {amount} VIP token(s) to {name}! They now have {tokens} token(s).',
    'givevip_created': 'Created new user and gave {amount} VIP token(s) to {name}! They now have {tokens} token(s).',
    'testsub': '🧪 TEST: Simulated {tier} subscription for @{user}! They now have {tokens} token(s).',
    'testbits_invalid': 'Please specify a positive number of bits.',
    'testbits_below': '🧪 TEST: Simulated {bits} bits but no tokens earned (below minimum).',
    'testbits': '🧪 TEST: Simulated {bits} bits from @{user}! Earned {earned} token(s), now has {tokens} total.',
    'testsuperchat_invalid': 'Please specify a positive dollar amount.',
    'testsuperchat_below': '🧪 TEST: Simulated ${amount:.2f} Super Chat but no tokens earned (below minimum).',
    'testsuperchat': '🧪 TEST: Simulated ${amount:.2f} Super Chat from @{user}! Earned {earned} token(s), now has {tokens} total.',
    'internal_error': 'Sorry, something went wrong processing your request.',
    'award_subscription': 'Thx for subscribing {user}! You now have {tokens} VIP token(s).',
    'award_bits': 'Thx for cheering {bits} bits {user}! You now have {tokens} VIP token(s).',
    'award_membership': 'Thx for becoming a member {user}! You now have {tokens} VIP token(s).',
    'award_superchat': 'Thx for the Super Chat {user}! You now have {tokens} VIP token(s).',
}


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        return default


@dataclass
class AppConfig:
    data_dir: str = './data'
    db_url: str = 'sqlite:///./data/state.sqlite'
    admin_token: str = 'change-me'
    max_requests_per_user: int = 3
    request_cooldown_seconds: int = 10
    vip_request_cost: int = 1
    catalog_username: str = ''
    catalog_password: str = ''
    catalog_base_url: str = 'https://customsforge.com'
    catalog_api_url: str = 'https://ignition4.customsforge.com'
    catalog_timeout_seconds: float = 15.0
    public_base_url: str = 'http://localhost:7070'
    commands_file: Optional[str] = None
    messages_file: Optional[str] = None

    @property
    def has_catalog_credentials(self) -> bool:
        return bool(self.catalog_username and self.catalog_password)


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if env is None else env
    data_dir = env.get('DATA_DIR') or './data'
    db_url = env.get('DB_URL') or f"sqlite:///{Path(data_dir) / 'state.sqlite'}"
    return AppConfig(
        data_dir=data_dir,
        db_url=db_url,
        admin_token=env.get('ADMIN_TOKEN', 'change-me'),
        max_requests_per_user=_env_int(env, 'MAX_REQUESTS_PER_USER', 3),
        request_cooldown_seconds=_env_int(env, 'REQUEST_COOLDOWN_SECONDS', 10),
        vip_request_cost=max(1, _env_int(env, 'VIP_REQUEST_COST', 1)),
        catalog_username=env.get('CATALOG_USERNAME', ''),
        catalog_password=env.get('CATALOG_PASSWORD', ''),
        catalog_base_url=(env.get('CATALOG_BASE_URL') or 'https://customsforge.com').rstrip('/'),
        catalog_api_url=(env.get('CATALOG_API_URL') or 'https://ignition4.customsforge.com').rstrip('/'),
        catalog_timeout_seconds=_env_float(env, 'CATALOG_TIMEOUT_SECONDS', 15.0),
        public_base_url=(env.get('PUBLIC_BASE_URL') or 'http://localhost:7070').rstrip('/'),
        commands_file=env.get('COMMANDS_FILE') or None,
        messages_file=env.get('BOT_MESSAGES_PATH') or None,
    )


def load_commands(path: Optional[str]) -> Dict[str, List[str]]:
    cfg = DEFAULT_COMMANDS.copy()
    if path:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
                cfg.update(data)
        except FileNotFoundError:
            pass
    return {k: [str(a).lower() for a in v] if isinstance(v, list) else [str(v).lower()] for k, v in cfg.items()}


def load_messages(path: Optional[str]) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    if path:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
                cfg.update(data)
        except FileNotFoundError:
            pass
    return cfg
