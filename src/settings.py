import logging
from pathlib import Path

import tomlkit
from pydantic import BaseModel, field_validator

from shared.constants import (
    DEFAULT_LOG_LEVEL,
    DEFAULT_TILE_IMAGE_FORMAT,
    TILE_CACHE_DEFAULT_TAG,
    TILE_CACHE_DIR,
    TILE_CACHE_MAX_SIZE_MB,
    TILE_IMAGE_FORMATS,
    TILE_SIZE,
)
from tiles.keys import validate_tag

logger = logging.getLogger(__name__)


class CacheSettings(BaseModel):
    """Настройки кэша тайлов, загружаемые из TOML."""

    model_config = {
        'extra': 'ignore',  # игнорировать лишние поля из конфигов
    }

    # Каталог хранилища
    cache_dir: str = TILE_CACHE_DIR
    # Лимит размера хранилища (МБ)
    max_size_mb: int = TILE_CACHE_MAX_SIZE_MB
    # Пространство имён ключей провайдера
    tag: str = TILE_CACHE_DEFAULT_TAG
    # Размер тайла эталонного генератора (px)
    tile_size: int = TILE_SIZE
    # Формат кодирования тайлов
    image_format: str = DEFAULT_TILE_IMAGE_FORMAT
    # Уровень логирования
    log_level: str = DEFAULT_LOG_LEVEL

    @field_validator('max_size_mb')
    @classmethod
    def validate_max_size_mb(cls, v):
        v = int(v)
        if v < 0:
            msg = 'max_size_mb не может быть отрицательным'
            raise ValueError(msg)
        return v

    @field_validator('tag')
    @classmethod
    def check_tag(cls, v):
        return validate_tag(v)

    @field_validator('tile_size')
    @classmethod
    def validate_tile_size(cls, v):
        v = int(v)
        if v <= 0:
            msg = 'tile_size должен быть положительным'
            raise ValueError(msg)
        return v

    @field_validator('image_format')
    @classmethod
    def validate_image_format(cls, v):
        v = str(v).upper()
        if v not in TILE_IMAGE_FORMATS:
            msg = f'image_format должен быть одним из {", ".join(TILE_IMAGE_FORMATS)}'
            raise ValueError(msg)
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = str(v).upper()
        if not isinstance(logging.getLevelName(v), int):
            msg = f'Неизвестный уровень логирования: {v}'
            raise ValueError(msg)
        return v

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024


def load_settings(path: str | Path) -> CacheSettings:
    """
    Загрузка и валидация TOML -> CacheSettings.

    Отсутствующие в файле поля получают значения по умолчанию.
    """
    path = Path(path)
    if not path.exists():
        msg = f'Конфигурация не найдена: {path}'
        raise FileNotFoundError(msg)
    data = tomlkit.parse(path.read_text(encoding='utf-8'))
    settings = CacheSettings.model_validate(data.unwrap())
    logger.info('Settings loaded from %s: cache_dir=%s, tag=%s', path, settings.cache_dir, settings.tag)
    return settings


def save_settings(settings: CacheSettings, path: str | Path) -> Path:
    """Сохранение CacheSettings в TOML."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = tomlkit.document()
    for name, value in settings.model_dump().items():
        doc.add(name, value)
    path.write_text(tomlkit.dumps(doc), encoding='utf-8')
    return path
