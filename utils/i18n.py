import gettext
import locale
import os

APP_NAME = "camera-bridge"

# When installed: /usr/share/locale
# When developing: <project>/locale
_app_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
localedir = os.path.join(_app_dir, "locale")
if not os.path.isdir(localedir):
    localedir = "/usr/share/locale"

try:
    locale.setlocale(locale.LC_ALL, '')
except locale.Error:
    pass

gettext.bindtextdomain(APP_NAME, localedir)
gettext.textdomain(APP_NAME)
_ = gettext.gettext
