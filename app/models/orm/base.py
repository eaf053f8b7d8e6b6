from sqlalchemy.orm import declarative_base


class CustomBase:
    def __repr__(self) -> str:
        class_name = self.__class__.__name__

        # Mapped attribute keys, which can differ from column names (e.g. order/touch_order)
        columns = [(attr.key, getattr(self, attr.key)) for attr in self.__mapper__.column_attrs]

        column_str = ", ".join(f"{name}={repr(value)}" for name, value in columns)

        return f"{class_name}({column_str})"


Base = declarative_base(cls=CustomBase)
