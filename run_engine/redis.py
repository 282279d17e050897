import redis
from django.conf import settings

##### NAMESPACES
RUN_PROCESSING_LOCK_REDIS_KEY = "RUN_PROCESSING_LOCK:" #string per run id, held while a dispatch loop owns the run
RUN_CHANNEL = "run-{run_id}" #pub/sub channel for a single run
ORG_CHANNEL = "org-{org_id}" #pub/sub channel for everything in an organization

#####


conn = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True
)


def run_channel(run_id):
    return RUN_CHANNEL.format(run_id=run_id)


def org_channel(org_id):
    return ORG_CHANNEL.format(org_id=org_id)
