"""Redis Lua scripts for fixed-window counters.

Scripts run atomically on the Redis server, so the increment and the expiry
update can never be interleaved with another caller's increment.
"""

# Increment a window counter by a weight and bound its lifetime.
# TTL returns -1 for a key without expiry (just created by INCRBY) and -2 for
# a missing key; both are below any requested TTL, so the expiry is always set
# on creation. An existing expiry is only ever extended, never shortened.
INCREMENT_AND_BOUND_SCRIPT = """
    local key = KEYS[1]
    local weight = tonumber(ARGV[1])
    local ttl = tonumber(ARGV[2])

    local count = redis.call('INCRBY', key, weight)

    local current_ttl = redis.call('TTL', key)
    if current_ttl < ttl then
        redis.call('EXPIRE', key, ttl)
    end

    return count
"""
