"""
Server-side Lua used by the matching stores.

Each script runs atomically inside Redis, which is what gives the queue its
compare-and-delete semantics across many web instances. Keys are passed
through KEYS where they are known up front; keys derived from a value read
inside the script (another user's entry, an entry's partition) are built
from ARGV prefixes.
"""

from __future__ import annotations

from typing import Final

# KEYS: queue, entry  ARGV: user_id, topic, difficulty, enqueued_at, side (r|l), replace (0|1)
ENQUEUE: Final[str] = """
local q = KEYS[1]
local ek = KEYS[2]
local uid = ARGV[1]
local current = redis.call('HGET', ek, 'partition')
if current then
  if ARGV[6] ~= '1' then
    return 0
  end
  redis.call('LREM', current, 0, uid)
  redis.call('DEL', ek)
end
redis.call('HSET', ek, 'partition', q, 'topic', ARGV[2], 'difficulty', ARGV[3], 'enqueued_at', ARGV[4])
if ARGV[5] == 'l' then
  redis.call('LPUSH', q, uid)
else
  redis.call('RPUSH', q, uid)
end
return 1
"""

# KEYS: queue, entry  ARGV: user_id
REMOVE: Final[str] = """
local removed = redis.call('LREM', KEYS[1], 0, ARGV[1])
if redis.call('HGET', KEYS[2], 'partition') == KEYS[1] then
  redis.call('DEL', KEYS[2])
  removed = removed + 1
end
if removed > 0 then
  return 1
end
return 0
"""

# KEYS: entry  ARGV: user_id
REMOVE_USER: Final[str] = """
local q = redis.call('HGET', KEYS[1], 'partition')
if not q then
  return 0
end
redis.call('LREM', q, 0, ARGV[1])
redis.call('DEL', KEYS[1])
return 1
"""

# KEYS: queue
# ARGV: candidate_id, entry_prefix, already_queued (0|1), status_prefix, reserve_prefix, match_id, reserve_ttl
# Returns {user_id, topic, difficulty, enqueued_at} of the counterpart, or nil.
# Both users are left reserved under match_id until MARK_MATCHED or RELEASE.
TAKE_COUNTERPART: Final[str] = """
local q = KEYS[1]
local me = ARGV[1]
local prefix = ARGV[2]
local queued = ARGV[3] == '1'
local sprefix = ARGV[4]
local rprefix = ARGV[5]
local function waiting(uid)
  return redis.call('HGET', sprefix .. uid, 'state') == 'pending'
end
local function reserved(uid)
  return redis.call('EXISTS', rprefix .. uid) == 1
end
if not waiting(me) or reserved(me) then
  return false
end
if queued and redis.call('HGET', prefix .. me, 'partition') ~= q then
  return false
end
local ids = redis.call('LRANGE', q, 0, -1)
for i = 1, #ids do
  local other = ids[i]
  if other ~= me then
    local ek = prefix .. other
    local fields = redis.call('HMGET', ek, 'partition', 'topic', 'difficulty', 'enqueued_at')
    if fields[1] ~= q then
      redis.call('LREM', q, 0, other)
    elseif not waiting(other) then
      redis.call('LREM', q, 0, other)
      redis.call('DEL', ek)
    elseif not reserved(other) then
      redis.call('LREM', q, 0, other)
      redis.call('DEL', ek)
      if queued then
        redis.call('LREM', q, 0, me)
        redis.call('DEL', prefix .. me)
      end
      redis.call('SET', rprefix .. me, ARGV[6], 'EX', ARGV[7])
      redis.call('SET', rprefix .. other, ARGV[6], 'EX', ARGV[7])
      return {other, fields[2], fields[3], fields[4]}
    end
  end
end
return false
"""

# KEYS: reserve_a, reserve_b  ARGV: match_id
RELEASE: Final[str] = """
local released = 0
for i = 1, #KEYS do
  if redis.call('GET', KEYS[i]) == ARGV[1] then
    redis.call('DEL', KEYS[i])
    released = released + 1
  end
end
return released
"""

# KEYS: status_a, status_b, reserve_a, reserve_b, epoch_a, epoch_b, prompt_a, prompt_b, entry_a, entry_b
# ARGV: match_id, topic, difficulty, user_a, user_b, session_id, matched_at, now, ttl
# Returns 0 when either reservation no longer belongs to match_id.
MARK_MATCHED: Final[str] = """
if redis.call('GET', KEYS[3]) ~= ARGV[1] or redis.call('GET', KEYS[4]) ~= ARGV[1] then
  return 0
end
local users = {ARGV[4], ARGV[5]}
for i = 1, 2 do
  local uid = users[i]
  local q = redis.call('HGET', KEYS[8 + i], 'partition')
  if q then
    redis.call('LREM', q, 0, uid)
  end
  redis.call('DEL', KEYS[i], KEYS[2 + i], KEYS[4 + i], KEYS[6 + i], KEYS[8 + i])
  redis.call('HSET', KEYS[i],
    'state', 'matched', 'topic', ARGV[2], 'difficulty', ARGV[3], 'match_id', ARGV[1],
    'matched_with', users[3 - i], 'session_id', ARGV[6], 'matched_at', ARGV[7], 'updated_at', ARGV[8])
  redis.call('EXPIRE', KEYS[i], ARGV[9])
end
return 1
"""

# KEYS: status  ARGV: topic, difficulty, now, ttl
CLAIM_PENDING: Final[str] = """
if redis.call('HGET', KEYS[1], 'state') == 'pending' then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1], 'state', 'pending', 'topic', ARGV[1], 'difficulty', ARGV[2], 'updated_at', ARGV[3])
redis.call('EXPIRE', KEYS[1], ARGV[4])
return 1
"""

# KEYS: status, reserve
CLEAR_IF_PENDING: Final[str] = """
if redis.call('HGET', KEYS[1], 'state') == 'pending' and redis.call('EXISTS', KEYS[2]) == 0 then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

# KEYS: status, epoch, entry, prompt, reserve
# ARGV: signal_type, epoch, user_id, now, status_ttl, prompt_ttl
EXPIRE_REQUEST: Final[str] = """
if redis.call('HGET', KEYS[1], 'state') ~= 'pending' then
  return 'not_pending'
end
if redis.call('GET', KEYS[2]) ~= ARGV[2] then
  return 'stale_epoch'
end
if ARGV[1] == 'prompt' then
  redis.call('SET', KEYS[4], ARGV[2], 'EX', ARGV[6])
  return 'prompted'
end
if redis.call('EXISTS', KEYS[5]) == 1 then
  return 'reserved'
end
local q = redis.call('HGET', KEYS[3], 'partition')
if q then
  redis.call('LREM', q, 0, ARGV[3])
end
redis.call('DEL', KEYS[3])
redis.call('HSET', KEYS[1], 'state', 'not_found', 'updated_at', ARGV[4])
redis.call('EXPIRE', KEYS[1], ARGV[5])
redis.call('DEL', KEYS[2], KEYS[4])
return 'expired'
"""
