import re

# --- Формат записи кэша тайлов
# Индексы под-потоков одной записи (порядок фиксирован)
INDEX_DATA = 0
INDEX_HEIGHT = 1
INDEX_WIDTH = 2
# Количество под-потоков на запись
TILE_VALUE_COUNT = 3

# Ширина целочисленных полей (height/width), байт, big-endian со знаком
TILE_INT_FORMAT = '>i'
TILE_INT_SIZE = 4

# Шаблон ключа: x_y_zoom_tag
TILE_KEY_SEPARATOR = '_'
TILE_KEY_FORMAT = '{x}_{y}_{zoom}_{tag}'

# Допустимый формат тега (пространства имён провайдера)
TILE_TAG_PATTERN = re.compile(r'[A-Za-z0-9_-]{1,64}')

# --- Хранилище по умолчанию (SQLite)
# Каталог хранилища (относительные пути считаются от текущего каталога)
TILE_CACHE_DIR = '.cache/tile_store'
# Имя файла базы
TILE_CACHE_DB_NAME = 'tiles.db'
# Лимит размера хранилища (МБ), при превышении удаляются давно неиспользуемые записи
TILE_CACHE_MAX_SIZE_MB = 64
# Тег по умолчанию
TILE_CACHE_DEFAULT_TAG = 'default'

# --- Эталонный генератор тайлов
# Базовый размер тайла (пикселей)
TILE_SIZE = 256
# Поддерживаемые форматы кодирования
TILE_IMAGE_FORMATS = ('PNG', 'JPEG', 'WEBP')
DEFAULT_TILE_IMAGE_FORMAT = 'PNG'
# Цвет фона тайла (RGB)
TILE_BACKGROUND_COLOR = (240, 240, 235)
# Цвет рамки и подписи (RGB)
TILE_GRID_COLOR = (90, 90, 90)
# Толщина рамки (px)
TILE_BORDER_WIDTH_PX = 1

# --- Логирование
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_LOG_LEVEL = 'INFO'
