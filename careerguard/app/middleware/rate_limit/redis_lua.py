"""Redis Lua scripts for the counter store.

These scripts run the whole sliding-window batch atomically on the server,
so concurrent processes can never interleave between the count and the
insert.
"""

# Prune, count, conditionally insert, refresh TTL and read the oldest entry
# in one atomic step. Scores are seconds as floats; the oldest score is
# returned as a string because Lua numbers are truncated to integers in
# Redis replies.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]
    local ttl_ms = tonumber(ARGV[5])

    -- Drop entries at or before the window start
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

    local count = redis.call('ZCARD', key)
    local admitted = 0
    if count < limit then
        redis.call('ZADD', key, now, member)
        admitted = 1
    end

    if admitted == 1 or count > 0 then
        redis.call('PEXPIRE', key, ttl_ms)
    end

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_score = ''
    if oldest[2] then
        oldest_score = oldest[2]
    end

    return {admitted, count, oldest_score}
"""
