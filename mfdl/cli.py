import argparse
import sys

from mfdl.config.settings import settings


def main():
    parser = argparse.ArgumentParser("mfdl")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("serve", help="Inicia la API HTTP (uvicorn)")
    sw = sub.add_parser("sweep", help="Borra del almacén temporal los ficheros caducados")
    sw.add_argument("--max-age", type=int, default=None, help="segundos (def. RETENTION_SECS)")

    args = parser.parse_args()

    if args.cmd == "serve":
        try:
            import uvicorn

            uvicorn.run(
                "mfdl.web.api:create_app",
                factory=True,
                host=settings.API_HOST,
                port=settings.API_PORT,
                reload=False,
            )
            return 0
        except KeyboardInterrupt:
            print("\n[i] API detenida por el usuario.")
            return 0
        except Exception as e:
            print(f"[!] Error al iniciar la API: {e!r}")
            return 1

    elif args.cmd == "sweep":
        from mfdl.core.store import TransientStore

        max_age = args.max_age if args.max_age is not None else settings.RETENTION_SECS
        n = TransientStore(settings.TEMP_DIR).sweep(max_age)
        print(f"[i] {n} fichero(s) eliminados de {settings.TEMP_DIR}")
        return 0

    else:
        parser.print_help()
        # código 2 suele indicar 'uso incorrecto de CLI'
        return 2


if __name__ == "__main__":
    sys.exit(main())
