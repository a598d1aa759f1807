from .event import FreezeEvent
from .signals import PromotionEvent, ModerationTask, SyncRun
