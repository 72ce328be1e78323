"""Redis Lua scripts for the counter store.

These scripts make multi-step counter updates atomic across instances.
"""

# INCR the counter and attach a TTL only when this call created it.
# Later increments keep the original expiry, so a window cannot be kept
# alive by failing just before it lapses. Running both commands in one
# script means a crash between them cannot leave a counter without a TTL.
INCREMENT_WITH_EXPIRY_SCRIPT = """
    local key = KEYS[1]
    local ttl_ms = tonumber(ARGV[1])

    local value = redis.call('INCR', key)
    if value == 1 then
        redis.call('PEXPIRE', key, ttl_ms)
    end
    return value
"""
