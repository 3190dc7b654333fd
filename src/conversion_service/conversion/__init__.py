"""
Domain layer for conversions.
Provides gateway interfaces, queue backends, the tier-aware scheduler and the
service that runs jobs, so front-ends (HTTP or others) share the same core.
"""

from .adapters import LibreOfficeConverter
from .interfaces import ConverterGateway, QueueBackend
from .models import ConversionJob, ConversionQuality, ConversionType, JobState, Principal
from .queues import InMemoryQueueBackend, RedisQueueBackend, build_queue_backend
from .scheduler import ConversionQueueScheduler, job_key
from .service import ConversionService
